"""
Vault API routes — team secrets CRUD.

Route prefix: /vault
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from api.dependencies import RequestContext, get_request_context, get_vault
from oauth.sanitizer import sanitize_secret
from utils.errors import NotFound, ValidationError, summarize_validation_error
from vault.schemas import SecretEntry, SecretQuery
from vault.service import SecretVault

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/vault", tags=["vault"])


class DeleteRequest(BaseModel):
    ids: List[str] = Field(..., min_length=1)


def _split(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _owner(ctx: RequestContext) -> str:
    if not ctx.user_email:
        raise ValidationError("Missing user email.")
    return ctx.user_email


@router.get("/keys")
async def list_keys(
    key_id: Optional[str] = Query(None, alias="keyId"),
    key_name: Optional[str] = Query(None, alias="keyName"),
    scope: Optional[str] = Query(None),
    exclude_scope: Optional[str] = Query(None, alias="excludeScope"),
    owner: Optional[str] = Query(None),
    fields: Optional[str] = Query(None),
    metadata_filter: Optional[str] = Query(None, alias="metadataFilter"),
    vault: SecretVault = Depends(get_vault),
) -> Dict[str, Any]:
    """
    Team secrets, values redacted.

    ``scope``, ``excludeScope`` and ``fields`` take comma-separated lists.
    With ``keyId`` / ``keyName`` a single record is returned.
    """
    try:
        query = SecretQuery(
            key_id=key_id,
            key_name=key_name,
            scope=_split(scope),
            exclude_scope=_split(exclude_scope),
            owner=owner,
            fields=_split(fields),
            metadata_filter=metadata_filter,
        )
    except PydanticValidationError as exc:
        raise ValidationError(summarize_validation_error(exc)) from None

    result = await vault.get(query)
    if (key_id or key_name) and not result:
        raise NotFound("Key not found.")
    if key_id or key_name:
        return sanitize_secret(result)
    return {secret_id: sanitize_secret(record) for secret_id, record in result.items()}


@router.post("/keys")
async def create_keys(
    body: Any = Body(...),
    ctx: RequestContext = Depends(get_request_context),
    vault: SecretVault = Depends(get_vault),
) -> Dict[str, List[str]]:
    """Store a batch of secrets; nothing is written if any name is taken."""
    # either a bare list or {"keys": [...]}
    entries = body.get("keys") if isinstance(body, dict) else body
    if not isinstance(entries, list):
        raise ValidationError("keys must be a list.")
    ids = await vault.set_multiple(entries, _owner(ctx))
    return {"ids": ids}


@router.put("/keys/{key_id}")
async def update_key(
    key_id: str,
    body: Dict[str, Any] = Body(...),
    ctx: RequestContext = Depends(get_request_context),
    vault: SecretVault = Depends(get_vault),
) -> Dict[str, str]:
    try:
        entry = SecretEntry.model_validate({**body, "id": key_id})
    except PydanticValidationError as exc:
        raise ValidationError(summarize_validation_error(exc)) from None
    await vault.set(entry, _owner(ctx), key_id=key_id)
    return {"id": key_id}


@router.post("/keys/{key_id}/invalidate")
async def invalidate_key(
    key_id: str,
    vault: SecretVault = Depends(get_vault),
) -> Dict[str, bool]:
    """Flag a secret as no longer working."""
    await vault.make_invalid(key_id)
    return {"invalid": True}


@router.delete("/keys/{key_id}")
async def delete_key(
    key_id: str,
    vault: SecretVault = Depends(get_vault),
) -> Dict[str, bool]:
    await vault.delete(key_id)
    return {"deleted": True}


@router.delete("/keys")
async def delete_keys(
    body: DeleteRequest,
    vault: SecretVault = Depends(get_vault),
) -> Dict[str, int]:
    await vault.delete_multiple(body.ids)
    return {"deleted": len(body.ids)}


@router.get("/count")
async def count_keys(vault: SecretVault = Depends(get_vault)) -> Dict[str, int]:
    return {"count": await vault.count()}
