from fastapi import FastAPI
from config import settings
from firebase_client import lifespan
from routes import ride_routes, directions_routes
import logging
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

app = FastAPI(
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan
)

@app.get("/health", include_in_schema=False)
async def health_check():
    return {"status": "ok"}

app.include_router(ride_routes.router, prefix="/rides", tags=["Rides"])
app.include_router(directions_routes.router, tags=["Directions"])

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
