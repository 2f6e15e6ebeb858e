import secrets

from fastapi import APIRouter, HTTPException, Request, Response

router = APIRouter()


def _bearer_token(request: Request) -> str | None:
    scheme, _, value = (request.headers.get("Authorization") or "").partition(" ")
    if scheme.lower() != "bearer" or not value:
        return None
    return value.strip()


def _authorize_scrape(request: Request) -> None:
    app_settings = getattr(request.app.state, "app_settings", None)
    if app_settings is None or app_settings.app_env != "prod":
        return
    expected = app_settings.metrics_token
    if not expected:
        raise HTTPException(status_code=500, detail="Metrics token misconfigured")
    provided = _bearer_token(request)
    if provided is None or not secrets.compare_digest(provided, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.get("/metrics")
async def metrics_endpoint(request: Request) -> Response:
    metrics_client = getattr(request.app.state, "metrics", None)
    if metrics_client is None or not metrics_client.enabled:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    _authorize_scrape(request)
    payload, content_type = metrics_client.render()
    return Response(content=payload, media_type=content_type)
