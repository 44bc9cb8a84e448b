from contextlib import asynccontextmanager
import logging
from fastapi import FastAPI
import firebase_admin
import httpx
from firebase_admin import credentials, firestore
from config import settings
from services.ride_store import FirestoreRideStore

logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    # --- Startup ---
    http_client = httpx.AsyncClient(timeout=settings.ROUTE_TIMEOUT_SECONDS)
    try:
        cred = credentials.Certificate(settings.FIREBASE_CREDENTIALS)
        firebase_app = firebase_admin.initialize_app(cred, {
            'databaseURL': settings.DATABASE_URL
        })
        db = firestore.client(app=firebase_app, database_id=settings.FIRESTORE_DATABASE_ID)
        store = FirestoreRideStore(db)
        logger.info("Firebase Admin SDK initialized successfully.")
    except Exception as e:
        logger.error(f"Error initializing Firebase Admin SDK: {e}")
        store = None
        db = None
        firebase_app = None

    app.state.store = store
    app.state.db = db
    app.state.firebase_app = firebase_app
    app.state.http_client = http_client
    yield

    # --- Shutdown ---
    await http_client.aclose()
    try:
        if db:
            logger.info("Closing Firestore client...")
            db.close()
            logger.info("Firestore client closed.")
        if firebase_app:
            firebase_admin.delete_app(firebase_app)
            logger.info("Firebase Admin SDK app deleted successfully.")
    except Exception as e:
        logger.error(f"Error deleting Firebase Admin SDK app: {e}")
