"""Application entry point for the gateway server."""

from irgateway.app import App
from irgateway.config import Config
from irgateway.logging import setup_logging
from irgateway.web.runner import run_server


def main() -> None:
    config = Config()  # type: ignore[call-arg]
    setup_logging(config.debug)
    app = App(config)
    run_server(app, config)


if __name__ == "__main__":
    main()
