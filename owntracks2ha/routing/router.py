from typing import Mapping
from loguru import logger


class TopicRouter:
    """
    Routing strategy for messages from the source broker.
    Each source topic maps to exactly one target topic; anything else is dropped.
    """

    def __init__(self, mappings: Mapping[str, str]):
        self._mappings = dict(mappings)
        if not self._mappings:
            logger.warning("No topic mappings configured. Nothing will be forwarded.")

    @property
    def source_topics(self) -> list[str]:
        return list(self._mappings)

    def get_target_topic(self, source_topic: str) -> str | None:
        """Returns the target topic, or None if the message should be ignored."""
        target_topic = self._mappings.get(source_topic)
        if target_topic is None:
            logger.warning(f"No mapping found for topic: {source_topic}")
        return target_topic

    def __len__(self) -> int:
        return len(self._mappings)
