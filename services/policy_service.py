"""
Commission policy loading.

Rates are configuration, not code: the active policy is read from a JSON or
TOML file (COMMISSION_POLICY_PATH) and handed to the attribution engine by the
caller. The format follows the file suffix; anything other than `.toml` is
read as JSON.
"""

from __future__ import annotations

import json
import logging
import os
import tomllib
from pathlib import Path
from typing import Any, Optional, Union

from domain.commission import CommissionPolicy

logger = logging.getLogger(__name__)

DEFAULT_POLICY_PATH = Path(__file__).parent.parent / "commission_policy.example.json"


def _parse_policy_file(policy_path: Path) -> Any:
    text = policy_path.read_text(encoding="utf-8")
    if policy_path.suffix.lower() == ".toml":
        try:
            return tomllib.loads(text)
        except tomllib.TOMLDecodeError as exc:
            raise RuntimeError(f"Commission policy file is not valid TOML: {policy_path}: {exc}") from exc
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"Commission policy file is not valid JSON: {policy_path}: {exc}") from exc


def load_commission_policy(path: Optional[Union[str, Path]] = None) -> CommissionPolicy:
    """
    Load a commission policy from a JSON or TOML file.

    Args:
        path: Policy file. Defaults to COMMISSION_POLICY_PATH, then to the
            example policy shipped at the project root.

    Returns:
        Immutable CommissionPolicy

    Raises:
        RuntimeError: If the file is missing or does not parse
        ValueError: If the file parses but does not describe a valid policy

    Example:
        policy = load_commission_policy("config/commission_policy.toml")
        entry = policy.entry_for(ProductType.CARD_PAYMENTS, 1)
    """

    policy_path = Path(path or os.getenv("COMMISSION_POLICY_PATH") or DEFAULT_POLICY_PATH)

    try:
        raw = _parse_policy_file(policy_path)
    except FileNotFoundError as exc:
        raise RuntimeError(
            f"Commission policy file not found: {policy_path}. "
            "Set COMMISSION_POLICY_PATH to a JSON or TOML policy file."
        ) from exc

    if not isinstance(raw, dict):
        raise ValueError(f"Commission policy must be a JSON object or TOML table: {policy_path}")

    policy = CommissionPolicy.from_mapping(raw)
    logger.info(
        f"Loaded commission policy '{policy.name}'",
        extra={
            "policy_name": policy.name,
            "policy_path": str(policy_path),
            "product_entries": len(policy.entries),
            "default_levels": sorted(policy.defaults),
        },
    )
    return policy


__all__ = ["DEFAULT_POLICY_PATH", "load_commission_policy"]
