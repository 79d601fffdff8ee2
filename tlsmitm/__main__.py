"""``python -m tlsmitm``: run the intercepting proxy until interrupted."""

from __future__ import annotations

import asyncio
import sys
from typing import Optional, Sequence

import uvloop

from .config import build_parser, load_config
from .errors import ConfigError
from .log import get_logger, setup_logging
from .server import InterceptProxy

logger = get_logger("tlsmitm")


async def _serve(proxy: InterceptProxy) -> None:
    await proxy.start()
    try:
        await proxy.serve_forever()
    finally:
        await proxy.stop()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config, level = load_config(args)
        setup_logging(level)
    except (ConfigError, ValueError) as e:
        print(f"tlsmitm: {e}", file=sys.stderr)
        return 2

    if not config.paths.key_file.is_file():
        logger.warning("Leaf key %s not found; run generate_certs.py first", config.paths.key_file)

    try:
        uvloop.run(_serve(InterceptProxy(config)))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except OSError as e:
        logger.critical("Cannot start proxy: %s", e)
        return 1
    except asyncio.CancelledError:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
