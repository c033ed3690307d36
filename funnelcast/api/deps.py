"""FastAPI dependencies shared by the routers."""

from fastapi import HTTPException, Request

from funnelcast.core.pipeline import ConversionPipeline


def get_pipeline(request: Request) -> ConversionPipeline:
    """The pipeline built in the app lifespan."""
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not ready.")
    return pipeline
