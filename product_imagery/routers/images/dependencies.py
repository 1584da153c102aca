"""FastAPI dependencies shared across the admin image endpoints."""

from functools import lru_cache

from fastapi import HTTPException, Request

from product_imagery import config
from product_imagery.services.generation_service import (
    PipelineDependencies,
    build_default_dependencies,
)

APP_SECRET_HEADER = "X-App-Secret"


async def verify_admin(request: Request) -> None:
    """
    Reject console calls that do not carry this deployment's shared secret.

    Raises:
        HTTPException: 500 when APP_SECRET is unset, 400 when the header is
        missing, 403 when it does not match
    """
    expected = config.APP_SECRET
    if not expected:
        config.logger.error("Admin request rejected: APP_SECRET is not configured")
        raise HTTPException(
            status_code=500,
            detail="Server configuration error: APP_SECRET not configured",
        )

    provided = request.headers.get(APP_SECRET_HEADER)
    if not provided:
        raise HTTPException(status_code=400, detail=f"Missing {APP_SECRET_HEADER} header")

    if provided != expected:
        config.logger.warning(
            "Admin request rejected: bad secret",
            extra={"path": request.url.path},
        )
        raise HTTPException(status_code=403, detail=f"Invalid {APP_SECRET_HEADER} header")


@lru_cache(maxsize=1)
def get_pipeline() -> PipelineDependencies:
    """
    Process-wide pipeline collaborators.
    The secret resolver cache lives here, so one instance must be shared.
    """
    config.logger.info("Building product image pipeline dependencies")
    return build_default_dependencies()
