import logging
import httpx
from fastapi import APIRouter, Request, Query
from fastapi.responses import JSONResponse
from config import settings

logger = logging.getLogger(__name__)

router = APIRouter()

@router.get("/directions")
async def get_directions(
    request: Request,
    origin: str | None = Query(None, description="lat,lng"),
    destination: str | None = Query(None, description="lat,lng"),
    mode: str = Query("driving"),
):
    """Server-side proxy to Google Directions so the API key never reaches clients.

    Provider-level errors (REQUEST_DENIED, ZERO_RESULTS...) are passed through
    with HTTP 200 so the client can switch to its fallback provider.
    """
    if not origin or not destination:
        return JSONResponse(
            status_code=400,
            content={"status": "BAD_REQUEST", "error_message": "origin and destination are required"},
        )

    if not settings.GOOGLE_MAPS_API_KEY:
        return JSONResponse(
            status_code=500,
            content={"status": "NO_KEY", "error_message": "Missing GOOGLE_MAPS_API_KEY"},
        )

    params = {
        "origin": origin,
        "destination": destination,
        "mode": mode,
        "key": settings.GOOGLE_MAPS_API_KEY,
    }
    if settings.DIRECTIONS_REGION:
        params["region"] = settings.DIRECTIONS_REGION
    if settings.DIRECTIONS_LANGUAGE:
        params["language"] = settings.DIRECTIONS_LANGUAGE

    client = request.app.state.http_client
    try:
        response = await client.get(
            settings.DIRECTIONS_API_URL, params=params, timeout=settings.ROUTE_TIMEOUT_SECONDS
        )
    except httpx.HTTPError as exc:
        logger.warning(f"Directions request failed: {exc}")
        return JSONResponse(status_code=502, content={"status": "BAD_GATEWAY", "error_message": str(exc)})

    try:
        data = response.json()
    except ValueError:
        return JSONResponse(
            status_code=502,
            content={"status": "BAD_GATEWAY", "error_message": "Google response was not JSON"},
        )

    status = data.get("status") if isinstance(data, dict) else None
    if status != "OK":
        logger.warning(f"Directions provider answered {status}")
    return JSONResponse(status_code=200, content=data)
