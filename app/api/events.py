"""Event dispatch API endpoint."""

from fastapi import APIRouter, HTTPException, status

from app.api.deps import Engine
from app.models.dispatch import DispatchRequest, DispatchResult
from app.services.errors import DeliveryValidationError, TemplateNotFound

router = APIRouter(prefix="/events", tags=["Events"])


@router.post("", response_model=DispatchResult, status_code=status.HTTP_202_ACCEPTED)
def dispatch_event_endpoint(
    engine: Engine,
    request: DispatchRequest,
) -> DispatchResult:
    """Fan an event out to subscribed webhooks and notification channels.

    Delivery is asynchronous; the response lists the jobs that were queued.
    """
    try:
        return engine.dispatch(request)
    except TemplateNotFound as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        )
    except DeliveryValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        )
