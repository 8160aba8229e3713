import asyncio
from core.initialization import initialize_components, load_configuration
from utils.logger import setup_logger

async def run_bot() -> None:
    """
    Entrypoint coroutine for the copy-trading poller.

    Loads the configuration, configures a dedicated logger, wires the ledger,
    follower directory, broker gateway and fan-out engine, then polls the
    master account until cancelled.
    """
    config = load_configuration()

    logger = setup_logger("CopyTrader", to_console=True)

    components = initialize_components(config, logger=logger)
    poller = components["poller"]
    fetch_client = components["fetch_client"]

    try:
        await poller.run()
    finally:
        await fetch_client.close()
        if components["persistence"] is not None:
            components["persistence"].close()

def main():
    try:
        asyncio.run(run_bot())
    except Exception as e:
        print(f"❌ Copy trader terminated due to error: {e}")

if __name__ == "__main__":
    main()
