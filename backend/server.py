"""
GPI Document Hub - Library Conversion Server

Entry point for the folder-to-library conversion API. Routes live in /routes/.
"""

from dotenv import load_dotenv
load_dotenv()  # Load .env file before any os.environ calls

from fastapi import FastAPI, APIRouter
from fastapi.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from contextlib import asynccontextmanager
import logging

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# ==================== ROUTERS ====================
from routes import library_conversion

# ==================== SERVICES ====================
from services.library_conversion import config as conversion_config
from services.library_conversion.store import ConversionStore

db = None
mongo_client = None


# ==================== LIFESPAN ====================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    global db, mongo_client

    logger.info("Starting GPI Document Hub library conversion service...")

    mongo_client = AsyncIOMotorClient(conversion_config.MONGO_URL)
    db = mongo_client[conversion_config.DB_NAME]

    library_conversion.set_db(db, mongo_client)

    await create_indexes()

    logger.info("Library conversion service started (db=%s)", conversion_config.DB_NAME)

    yield

    logger.info("Shutting down library conversion service...")
    if mongo_client:
        mongo_client.close()


async def create_indexes():
    """Create database indexes."""
    store = ConversionStore(
        db,
        client=mongo_client,
        use_transactions=conversion_config.USE_TRANSACTIONS,
        collection_prefix=conversion_config.COLLECTION_PREFIX,
    )
    await store.ensure_indexes()

    # Legacy collections are only read, by id and by folder
    await db.legacy_folders.create_index("id", unique=True)
    await db.legacy_documents.create_index("id", unique=True)
    await db.legacy_documents.create_index("folder_id")

    logger.info("Database indexes created")


# ==================== APP SETUP ====================
app = FastAPI(
    title="GPI Document Hub - Library Conversion",
    description="Converts legacy document folders into content libraries",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

api_router = APIRouter(prefix="/api")
api_router.include_router(library_conversion.router)

app.include_router(api_router)


# ==================== ROOT ENDPOINTS ====================
@app.get("/")
async def root():
    return {
        "service": "GPI Document Hub - Library Conversion",
        "version": "1.0.0",
        "status": "running"
    }


@app.get("/api/health")
async def health():
    return {
        "status": "healthy",
        "service": "gpi-library-conversion",
        "library_conversion_enabled": conversion_config.is_library_conversion_enabled()
    }
