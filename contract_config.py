#!/usr/bin/env python3
import os
import sys
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional, Sequence

BASE = Path(__file__).resolve().parent
LOCK_NAME = "contract_template.lock.v1.json"


def find_default_lock(roots: Optional[Sequence[Path]] = None) -> Path:
    # checkout: schema/ beside the modules; installed: data-files put it under sys.prefix
    roots = list(roots) if roots is not None else [BASE, Path(sys.prefix)]
    for root in roots:
        p = root / "schema" / LOCK_NAME
        if p.exists():
            return p
    return roots[0] / "schema" / LOCK_NAME


DEFAULT_LOCK = find_default_lock()


def _env(name: str, default: str = "") -> str:
    return os.environ.get(name, default).strip()


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_decimal(name: str, default: str) -> Decimal:
    raw = _env(name, default)
    try:
        return Decimal(raw)
    except InvalidOperation:
        raise ValueError(f"{name} must be a number, got {raw!r}")


@dataclass
class PipelineConfig:
    template_path: str = ""
    lock_path: str = str(DEFAULT_LOCK)
    fetch_timeout: float = 30.0
    fetch_workers: int = 4
    total_tolerance: Decimal = Decimal("0.01")
    apply_formatting: bool = True
    out_dir: str = "."

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        return cls(
            template_path=_env("CONTRACT_TEMPLATE_PATH"),
            lock_path=_env("CONTRACT_TEMPLATE_LOCK", str(DEFAULT_LOCK)),
            fetch_timeout=float(_env_int("CONTRACT_FETCH_TIMEOUT", 30)),
            fetch_workers=max(1, _env_int("CONTRACT_FETCH_WORKERS", 4)),
            total_tolerance=_env_decimal("CONTRACT_TOTAL_TOLERANCE", "0.01"),
            apply_formatting=_env("CONTRACT_APPLY_FORMATTING", "1") not in ("0", "false", "no"),
            out_dir=_env("CONTRACT_OUT_DIR", "."),
        )
