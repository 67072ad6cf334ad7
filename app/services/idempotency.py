"""
Deterministic correlation ids for metered actions.

A retried request derives the same id, so the ledger's unique constraint
turns the second debit into a no-op.
"""
import hashlib
import json
from typing import Any, Dict, Optional


def derive_correlation_id(actor: Any, action: str, params: Optional[Dict[str, Any]] = None) -> str:
    """Hash of actor + action + canonical params, prefixed by the action name."""
    canonical = json.dumps(
        {"actor": str(actor), "action": action, "params": params or {}},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:24]
    return f"{action}-{digest}"
