from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from fulfillment.order_state import EDGE_REQUIREMENTS
from fulfillment.routes.orders import get_service
from fulfillment.service import OrderService
from fulfillment.stages import STAGES

router = APIRouter(tags=["dashboard"])


@router.get("/stages")
async def list_stages() -> JSONResponse:
    """Stage catalog plus the requirements of every legal edge, for rendering transition forms."""
    return JSONResponse(
        status_code=200,
        content={
            "stages": [
                {
                    "id": s.id.value,
                    "label": s.label,
                    "standard_duration_minutes": s.standard_duration_minutes,
                    "warning_threshold_minutes": s.warning_threshold_minutes,
                    "required_image_types": sorted(t.value for t in s.required_image_types),
                    "is_terminal": s.is_terminal,
                }
                for s in STAGES
            ],
            "edges": [
                {"from_stage": src.value, "to_stage": dst.value, **rules.to_dict()}
                for (src, dst), rules in EDGE_REQUIREMENTS.items()
            ],
        },
    )


@router.get("/dashboard/overdue")
async def overdue_summary(service: OrderService = Depends(get_service)) -> JSONResponse:
    summary = service.compute_overdue_summary(await service.list_orders())
    return JSONResponse(status_code=200, content=summary.to_dict())


@router.get("/dashboard/statistics")
async def statistics(service: OrderService = Depends(get_service)) -> JSONResponse:
    return JSONResponse(status_code=200, content=await service.statistics())
