# src/vaultgate/api/__main__.py
from __future__ import annotations

import uvicorn

from vaultgate.env import load_dotenv_if_present


def main() -> None:
    # Load .env early so VAULTGATE_* vars exist before anything reads them.
    load_dotenv_if_present()

    # Import after dotenv load.
    from vaultgate.api.app import create_app
    from vaultgate.runtime.gate_config import load_gate_config

    cfg = load_gate_config()
    uvicorn.run(create_app(), host=cfg.api_host, port=cfg.api_port, log_level=cfg.log_level.lower())


if __name__ == "__main__":
    main()
