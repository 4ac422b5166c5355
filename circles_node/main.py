from __future__ import annotations

import uvicorn

from circles_node import config as config_mod
from circles_node.api.main import create_app


def main() -> None:
    cfg = config_mod.load_config()
    config_mod.configure_logging(cfg)
    app = create_app(cfg=cfg)
    uvicorn.run(app, host=config_mod.get_bind_host(cfg), port=config_mod.get_bind_port(cfg))


if __name__ == "__main__":
    main()
