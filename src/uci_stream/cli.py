import logging
from pathlib import Path
from typing import Annotated, Optional

import msgspec
import uvicorn
from cyclopts import App, Parameter

from uci_stream.config import load_config
from uci_stream.server import create_app

logger = logging.getLogger(__name__)

app = App(name="uci-stream")


@app.command()
def serve(
    config: Annotated[Optional[Path], Parameter(help="TOML file with server settings")] = None,
    host: Annotated[Optional[str], Parameter(help="Interface to bind to (overrides config)")] = None,
    port: Annotated[Optional[int], Parameter(help="Port to listen on (overrides config)")] = None,
    verbose: Annotated[bool, Parameter(help="Log engine I/O")] = False,
):
    """Run the analysis streaming server"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    cfg = load_config(config)
    overrides = {k: v for k, v in (("host", host), ("port", port)) if v is not None}
    if overrides:
        cfg = msgspec.structs.replace(cfg, **overrides)

    logger.info(f"Engine: {cfg.engine_path!r}, max engines: {cfg.max_engines}, max analyses: {cfg.max_active_analysis}")
    logger.info(f"Listening on {cfg.host}:{cfg.port}")

    uvicorn.run(create_app(cfg), host=cfg.host, port=cfg.port, log_level="debug" if verbose else "info")


if __name__ == "__main__":
    app()
