import logging
from typing import Optional

from dotenv import load_dotenv
from flask import Flask

from .config import Settings
from .routes.api import api_bp
from .services.cache import UpdateCache
from .services.checker import UpdateChecker, UpdateService
from .services.compose import ComposeDriver
from .services.demo import DemoComposeDriver, DemoGateway
from .services.docker import DockerGateway, EngineGateway
from .services.orchestrator import RunRegistry, UpdateOrchestrator
from .services.registry import RegistryClientFactory

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    # urllib3 logs every retry at DEBUG with full URLs.
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def create_app(
    settings: Optional[Settings] = None,
    gateway: Optional[EngineGateway] = None,
    compose: Optional[ComposeDriver] = None,
    cache: Optional[UpdateCache] = None,
    start_background: bool = False,
) -> Flask:
    settings = settings or Settings.from_env()

    if gateway is None:
        gateway = DemoGateway() if settings.demo_mode else DockerGateway()

    if compose is None:
        if isinstance(gateway, DemoGateway):
            compose = DemoComposeDriver(gateway)
        else:
            compose = ComposeDriver(gateway, timeout=settings.compose_timeout)

    if cache is None:
        if isinstance(gateway, DemoGateway):
            cache = UpdateCache(gateway.check_image)
        else:
            cache = UpdateCache(UpdateChecker(gateway, RegistryClientFactory(settings)))

    app = Flask(__name__)
    app.config.update(
        SECRET_KEY=settings.secret_key,
    )

    app.settings = settings
    app.gateway = gateway
    app.update_service = UpdateService(cache, gateway, max_age=settings.update_check_interval)
    app.orchestrator = UpdateOrchestrator(gateway, compose, cache)
    app.runs = RunRegistry()

    app.register_blueprint(api_bp)

    if isinstance(gateway, DockerGateway) and not gateway.is_engine_running():
        app.logger.warning("Docker engine is not reachable, update checks will fail until it is")

    if start_background:
        app.update_service.start_refresher()

    app.logger.info("dockup ready (demo=%s)", settings.demo_mode)
    return app


def main() -> None:
    load_dotenv()
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    app = create_app(settings, start_background=True)
    app.run(host=settings.host, port=settings.port, threaded=True)


if __name__ == "__main__":
    main()
