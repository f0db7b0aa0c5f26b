import asyncio
import signal
import sys

from dotenv import load_dotenv
from loguru import logger

from reliable_chat.app_config import apply_env_overrides, load_json_config, parse_app_config
from reliable_chat.bootstrap import bootstrap_runtime
from reliable_chat.errors import StorageUnavailable


async def main() -> None:
    load_dotenv()

    app = apply_env_overrides(parse_app_config(load_json_config()))

    try:
        runtime = await bootstrap_runtime(app)
    except StorageUnavailable as ex:
        logger.error(str(ex))
        sys.exit(1)
    except OSError as ex:
        logger.error(f"Cannot listen on {app.host}:{app.port}: {ex}")
        sys.exit(1)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass  # Windows event loops; Ctrl+C still raises KeyboardInterrupt

    print(f"reliable-chat listening on ws://{app.host}:{runtime.gateway.bound_port}/")
    print(f"Message log: {runtime.message_log.path}")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")

    try:
        await stop.wait()
    finally:
        await runtime.shutdown()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
