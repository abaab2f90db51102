from fastapi import APIRouter, Depends, HTTPException, status

from order_lifecycle.api.dependencies import get_run_registry
from order_lifecycle.schemas.lifecycle import RunStatusResponse
from order_lifecycle.services.intake import RunRegistry

router = APIRouter(prefix="/runs", tags=["runs"])


@router.get("/{run_handle}", response_model=RunStatusResponse)
async def get_run(run_handle: str, registry: RunRegistry = Depends(get_run_registry)) -> RunStatusResponse:
    record = registry.get(run_handle)
    if not record:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Run {run_handle} not found"
        )
    return record.to_response()
