from fastapi import APIRouter, Request

from ..types.responses import HealthResponse

router = APIRouter()

SERVICE_NAME = "gasless-relayer"
SERVICE_VERSION = "0.1.0"


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Liveness check; never calls the ledger or the status store"""
    context = request.app.state.relay_context
    settings = context.settings
    return HealthResponse(
        status="ok",
        service=SERVICE_NAME,
        version=SERVICE_VERSION,
        network=settings.network,
        chainId=settings.chain_id,
        ledgerBackend=context.ledger.name,
        inFlight=context.in_flight,
    )
