"""Run the DCA engine against a live exchange until interrupted."""

import asyncio
import sys

from atr_dca.config import load_config, load_dca_config
from atr_dca.exceptions import ConfigurationError
from atr_dca.exchange_adapters.ccxt_adapter import CCXTGateway
from atr_dca.logging_setup import get_logger, setup_logging
from atr_dca.services.dca_engine import ScaledATRDCAEngine
from atr_dca.services.health_monitor import HealthMonitor
from atr_dca.services.persistence import PersistenceGateway

logger = get_logger("dca_runner")


async def run_engine() -> None:
    app_config = load_config()
    setup_logging(app_config.log_level)
    dca_config = load_dca_config()

    gateway = CCXTGateway(
        app_config.exchange_name,
        api_key=app_config.api_key,
        api_secret=app_config.api_secret,
        testnet=app_config.use_testnet,
    )
    persistence = PersistenceGateway(app_config.database_url)
    engine = ScaledATRDCAEngine(
        gateway,
        config=dca_config,
        persistence=persistence,
        monitor=HealthMonitor(interval_seconds=app_config.metrics_interval_seconds),
        constraints_file=app_config.constraints_file,
    )

    logger.info(f"🚀 Starting DCA engine on {app_config.exchange_name} (testnet={app_config.use_testnet})")
    await engine.start()
    try:
        # Positions arrive from the liquidation stream integration
        while True:
            await asyncio.sleep(3600)
    finally:
        await engine.stop()
        await gateway.close()
        persistence.close()


def main() -> None:
    try:
        asyncio.run(run_engine())
    except KeyboardInterrupt:
        logger.info("🛑 DCA engine stopped by user")
    except ConfigurationError as e:
        logger.error(f"❌ Invalid configuration: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
