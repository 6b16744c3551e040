"""
Vault template references in provider fields.

A provider field may hold ``{{KEY(My Key Name)}}`` instead of a literal
secret.  The reference is resolved against the team's vault for the
duration of the flow; the template text itself is what gets persisted.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Set

from utils.errors import ValidationError
from vault.schemas import SecretQuery
from vault.service import SecretVault

logger = logging.getLogger(__name__)

KEY_TEMPLATE = re.compile(r"\{\{\s*KEY\(\s*([^)]+?)\s*\)\s*\}\}")


def template_names(fields: Dict[str, Any]) -> Set[str]:
    """Every key name referenced by a string field of ``fields``."""
    names: Set[str] = set()
    for value in fields.values():
        if isinstance(value, str):
            names.update(KEY_TEMPLATE.findall(value))
    return names


async def resolve_templates(fields: Dict[str, Any], vault: SecretVault) -> Dict[str, Any]:
    """
    Copy of ``fields`` with every ``{{KEY(name)}}`` replaced by the secret's
    value.  Raises :class:`ValidationError` for a name the vault does not know.
    """
    names = template_names(fields)
    if not names:
        return dict(fields)

    values: Dict[str, str] = {}
    for name in names:
        try:
            query = SecretQuery(key_name=name)
        except ValueError:
            raise ValidationError("Invalid key reference.") from None
        record = await vault.get(query)
        if not record or not record.get("value"):
            logger.info("Unknown vault key referenced by team %s", vault.team_id)
            raise ValidationError(f"Key not found: {name}")
        values[name] = record["value"]

    resolved: Dict[str, Any] = {}
    for key, value in fields.items():
        if isinstance(value, str):
            value = KEY_TEMPLATE.sub(lambda m: values[m.group(1)], value)
        resolved[key] = value
    return resolved
