"""
Build a SettlementEngine from the environment.

Environment variables:
  RPC_URL                 Ledger JSON-RPC endpoint
  BOX_VAULT_ADDRESS       Box vault contract address
  OPERATOR_PRIVATE_KEY    Key that signs commit / reveal / settle txs
  ORACLE_URL              Randomness oracle gateway
  ORACLE_API_KEY          Bearer token for the oracle gateway (optional)
  ORACLE_QUEUE            Default oracle queue for projects that set none
  FATEBOX_DATA_DIR        Record store directory (default: data)
  PROJECT_CONFIG_PATH     Project config JSON (default: data/projects.json)
"""

import os
import logging
from dataclasses import replace
from pathlib import Path

from fatebox.config import load_policy, load_project_configs
from fatebox.engine import SettlementEngine, build_engine
from fatebox.ledger import Web3Ledger
from fatebox.oracle import HttpRandomnessOracle
from fatebox.store import JsonBoxStore

logger = logging.getLogger("fatebox.platform.bootstrap")

DATA_DIR = Path(os.getenv("FATEBOX_DATA_DIR", "data"))


def load_projects() -> dict:
    path = Path(os.getenv("PROJECT_CONFIG_PATH", str(DATA_DIR / "projects.json")))
    if not path.exists():
        logger.warning(f"No project config at {path} — engine starts with no projects")
        return {}

    projects = load_project_configs(path)
    default_queue = os.getenv("ORACLE_QUEUE", "")
    if default_queue:
        projects = {
            pid: cfg if cfg.oracle_queue else replace(cfg, oracle_queue=default_queue)
            for pid, cfg in projects.items()
        }
    return projects


def build_engine_from_env() -> tuple[SettlementEngine, Web3Ledger, HttpRandomnessOracle]:
    ledger = Web3Ledger()
    if not ledger.initialize(
        operator_private_key=os.getenv("OPERATOR_PRIVATE_KEY", ""),
        contract_address=os.getenv("BOX_VAULT_ADDRESS", ""),
        rpc_url=os.getenv("RPC_URL"),
    ):
        logger.warning("Ledger unavailable — box transitions will fail until it is configured")

    oracle = HttpRandomnessOracle(
        base_url=os.getenv("ORACLE_URL", "http://127.0.0.1:8090"),
        api_key=os.getenv("ORACLE_API_KEY", ""),
    )
    store = JsonBoxStore(DATA_DIR)
    engine = build_engine(ledger, oracle, store, load_projects(), policy=load_policy())
    return engine, ledger, oracle
