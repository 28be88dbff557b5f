from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from busfare.auth import require_admin
from busfare.ingestion import WebhookIngestor
from busfare.query import PaymentStatusView, StatusQueryService
from busfare.reconciliation import Reconciler

router = APIRouter(prefix="/payment", tags=["payment"])


def get_ingestor(request: Request) -> WebhookIngestor:
    return request.app.state.ingestor


def get_status_service(request: Request) -> StatusQueryService:
    return request.app.state.status_service


def get_reconciler(request: Request) -> Reconciler:
    return request.app.state.reconciler


@router.post("/webhook")
async def payment_webhook(request: Request, ingestor: WebhookIngestor = Depends(get_ingestor)):
    payload = await request.body()
    signature = request.headers.get(ingestor.signature_header)

    result = await run_in_threadpool(ingestor.handle, payload, signature)

    response = {"received": True, "result": result.result}
    if result.status:
        response["status"] = result.status
    return response


@router.get("/status", response_model=PaymentStatusView)
def payment_status(
    id: Optional[str] = None,
    service: StatusQueryService = Depends(get_status_service),
):
    if not id:
        raise HTTPException(status_code=400, detail="Payment ID is required")
    return service.get_status(id)


@router.post("/resync")
def resync_passengers(
    reconciler: Reconciler = Depends(get_reconciler),
    admin=Depends(require_admin),
):
    return {"repaired": reconciler.resync_confirmed()}
