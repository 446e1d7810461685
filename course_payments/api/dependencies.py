"""FastAPI dependencies."""
import hmac

from fastapi import Depends, HTTPException, Request, status

from course_payments.services import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    """Service container built by the application lifespan."""
    return request.app.state.container


async def require_validation_api_key(
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> None:
    """
    Guard for verdict callbacks.

    The shared key is read from the configured header; an unset key
    disables the endpoint.
    """
    settings = container.settings
    supplied = request.headers.get(settings.api_key_header, "")
    expected = settings.validation_api_key
    if not expected or not hmac.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
