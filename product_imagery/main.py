from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from product_imagery.config import logger
from product_imagery.core.errors import ImagePipelineError

from .routers import router

# Initialize FastAPI application
app = FastAPI(
    title="Product Image AI API",
    description="AI catalog image generation with transparency enforcement",
    version="1.0.0",
)

app.include_router(router)


# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ImagePipelineError)
async def handle_pipeline_error(request: Request, exc: ImagePipelineError) -> JSONResponse:
    logger.error(
        "Image pipeline request failed",
        extra={"path": request.url.path, "code": exc.code, "status": exc.status_code},
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/api/v1/health")
async def health() -> dict:
    return {"status": "ok"}


logger.info("Product Image AI API initialized successfully")
