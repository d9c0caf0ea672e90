from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from fulfillment.sqs_client import replay_dlq_to_main

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/dlq/replay")
async def dlq_replay(limit: int = Query(default=100, ge=1, le=1000)) -> JSONResponse:
    """
    Replay dead-lettered order events from the SQS DLQ to the main queue.
    Returns number of messages handled.
    """
    replayed = await replay_dlq_to_main(limit=limit)
    return JSONResponse(
        status_code=200,
        content={"status": "ok", "replayed": replayed},
    )
