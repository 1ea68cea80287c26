import sys
import argparse
from loguru import logger

from .bridge import BridgeController
from .config import DEFAULT_CONFIG_PATH, BridgeConfig, load_config
from .exceptions import ConfigError
from .sessions.mqttsession import MqttSession
from .supervisor import EXIT_FAILURE, LifecycleSupervisor


def create_parser():
    parser = argparse.ArgumentParser(
        description="owntracks2ha: OwnTracks to Home Assistant MQTT bridge",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--config",
        type=str,
        default=DEFAULT_CONFIG_PATH,
        metavar="FILE",
        help="YAML config file",
    )

    return parser


def setup_logging(level: str):
    logger.remove()
    logger.add(sys.stderr, level=level, colorize=True)
    logger.info(f"Logger level set to: {level}")


def build_bridge(config: BridgeConfig) -> BridgeController:
    source = MqttSession(config.source, name="Source")
    target = MqttSession(config.target, name="Target")
    return BridgeController(config, source, target)


def run(argv: list[str] | None = None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)

    logger.info("Loading configuration...")
    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.critical(str(e))
        return EXIT_FAILURE

    setup_logging(config.log_level)

    bridge = build_bridge(config)
    supervisor = LifecycleSupervisor(bridge, handle_signals=True)
    return supervisor.run()


def main():
    sys.exit(run())


if __name__ == "__main__":
    main()
