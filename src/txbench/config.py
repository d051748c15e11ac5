import os
import tomllib
from pathlib import Path

pkg_root = Path(__file__).parent
config_file = Path(os.getenv("TXBENCH_CONFIG", pkg_root / "config.toml"))


def load_config(path: str | Path = config_file) -> dict:
    cfg = tomllib.loads(Path(path).read_text())
    node = cfg["node"]
    host = node["docker"] if Path("/.dockerenv").is_file() else node["local"]
    host = os.getenv("RIPPLED_IP", host)
    node["rpc_url"] = os.getenv("RPC_URL", node.get("rpc_url", f"http://{host}:{node['rpc_port']}"))
    node["ws_url"] = os.getenv("WS_URL", node.get("ws_url", f"ws://{host}:{node['ws_port']}"))
    cfg["wallets"]["keys_file"] = os.getenv("WALLETS_FILE", cfg["wallets"]["keys_file"])
    return cfg


cfg = load_config()
