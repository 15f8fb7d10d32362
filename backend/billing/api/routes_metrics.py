import secrets

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from billing.infra.metrics import Metrics

router = APIRouter(tags=["metrics"])


def enabled_metrics(request: Request) -> Metrics:
    metrics_client = getattr(request.app.state, "metrics", None)
    if metrics_client is None or not metrics_client.enabled:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return metrics_client


def require_scrape_token(request: Request) -> None:
    """Prod scrapes must present ``Authorization: Bearer <METRICS_TOKEN>``."""
    app_settings = getattr(request.app.state, "app_settings", None)
    if app_settings is None or app_settings.app_env != "prod":
        return
    if not app_settings.metrics_token:
        raise HTTPException(status_code=500, detail="Metrics token misconfigured")
    scheme, _, presented = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(presented.strip(), app_settings.metrics_token):
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.get("/metrics", dependencies=[Depends(require_scrape_token)])
async def metrics_endpoint(metrics_client: Metrics = Depends(enabled_metrics)) -> Response:
    payload, content_type = metrics_client.render()
    return Response(content=payload, media_type=content_type)
