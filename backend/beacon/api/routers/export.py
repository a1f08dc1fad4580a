from __future__ import annotations

from fastapi import APIRouter, Depends

from beacon.api.contracts import AttestationRequest, ExportGateRequest
from beacon.api.services.runtime import build_gatekeeper, get_store
from beacon.auth import CallerContext, require_caller
from beacon.db import Store


router = APIRouter(prefix="/api/export")


@router.post("/gate")
async def export_gate_endpoint(
    payload: ExportGateRequest,
    caller: CallerContext = Depends(require_caller),
    store: Store = Depends(get_store),
) -> dict[str, object]:
    evaluation = await build_gatekeeper(store).evaluate(
        payload.proposal_id,
        caller.user_id,
        caller.organization_id,
        payload.export_format,
    )
    enforcement = evaluation.enforcement
    return {
        "gate_result": evaluation.gate_result.model_dump(),
        "audit_record_id": evaluation.audit_record.id,
        "enforcement": {
            "compliance": enforcement.compliance.model_dump() if enforcement.compliance else None,
            "placeholders": enforcement.placeholders.model_dump() if enforcement.placeholders else None,
            "coverage": enforcement.coverage.model_dump() if enforcement.coverage else None,
            "claims": enforcement.claims.model_dump() if enforcement.claims else None,
            "ambiguities": enforcement.ambiguities.model_dump() if enforcement.ambiguities else None,
        },
    }


@router.post("/attestation")
async def export_attestation_endpoint(
    payload: AttestationRequest,
    caller: CallerContext = Depends(require_caller),
    store: Store = Depends(get_store),
) -> dict[str, bool]:
    await build_gatekeeper(store).record_attestation(
        payload.audit_record_id,
        payload.attestation_text,
        caller.organization_id,
    )
    return {"success": True}


@router.get("/audit/{proposal_id}")
async def export_audit_endpoint(
    proposal_id: str,
    caller: CallerContext = Depends(require_caller),
    store: Store = Depends(get_store),
) -> dict[str, object]:
    records = await build_gatekeeper(store).list_audit_records(proposal_id, caller.organization_id)
    return {"proposal_id": proposal_id, "records": [record.model_dump() for record in records]}
