import json
import sys
import time
from typing import Any, Optional

from hexbytes import HexBytes


def _log(msg: str) -> None:
    ts = time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime())
    sys.stderr.write(f"[{ts} UTC] {msg}\n")
    sys.stderr.flush()


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (HexBytes, bytes, bytearray)):
        return "0x" + bytes(obj).hex()
    if isinstance(obj, set):
        return sorted(obj)
    return str(obj)


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, default=_json_default, ensure_ascii=True, sort_keys=True)


def _load_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _db_addr(addr: Optional[str]) -> Optional[str]:
    if addr is None:
        return None
    return str(addr).lower()


def _parse_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        if value.startswith("0x"):
            return int(value, 16)
        return int(value)
    return int(value)


def _to_hex(value: Any) -> Optional[str]:
    """Render a hash-like value as a 0x-prefixed lowercase hex string."""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value).lower()
    return text if text.startswith("0x") else "0x" + text
