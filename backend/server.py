from fastapi import FastAPI, APIRouter
from dotenv import load_dotenv
load_dotenv()  # Load .env file before any os.environ calls
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pathlib import Path

from services.circuit import (
    WorkflowEngine, InMemoryDocumentStore, MongoDocumentStore,
    StaticUserDirectory, MongoUserDirectory,
    MongoApprovalStore, MongoCircuitStore, MongoHistoryStore,
)
from routes import (
    circuits_router, set_circuits_deps,
    workflows_router, set_workflows_deps,
    approvals_router, set_approvals_deps,
    install_error_handlers,
)

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# MongoDB connection (optional - everything stays in memory when unset)
MONGO_URL = os.environ.get('MONGO_URL', '')
DB_NAME = os.environ.get('DB_NAME', 'circuit_hub')

client = None
db = None
if MONGO_URL:
    client = AsyncIOMotorClient(MONGO_URL)
    db = client[DB_NAME]
    workflow_engine = WorkflowEngine(
        document_store=MongoDocumentStore(db.hub_documents),
        user_directory=MongoUserDirectory(db.users),
        circuit_store=MongoCircuitStore(db.circuits),
        approval_store=MongoApprovalStore(db.approval_requests),
        history_store=MongoHistoryStore(db.hub_documents),
    )
else:
    workflow_engine = WorkflowEngine(
        document_store=InMemoryDocumentStore(),
        user_directory=StaticUserDirectory(),
    )

app = FastAPI(title="Circuit Hub API")
api_router = APIRouter(prefix="/api")

set_circuits_deps(workflow_engine.registry)
set_workflows_deps(workflow_engine)
set_approvals_deps(workflow_engine)

api_router.include_router(circuits_router)
api_router.include_router(workflows_router)
api_router.include_router(approvals_router)


@api_router.get("/health")
async def health_check():
    """Health check endpoint for Docker/Kubernetes liveness checks."""
    return {
        "status": "healthy",
        "service": "circuit-hub",
        "storage": "mongodb" if db is not None else "memory"
    }


app.include_router(api_router)
install_error_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup():
    if db is not None:
        await db.hub_documents.create_index("id", unique=True)
        await db.hub_documents.create_index("circuit_id")
        await db.users.create_index("id", unique=True)
        await db.circuits.create_index("id", unique=True)
        await db.approval_requests.create_index("id", unique=True)
        await db.approval_requests.create_index("status")
        # At most one Open request per document
        await db.approval_requests.create_index(
            "document_id",
            unique=True,
            partialFilterExpression={"status": "Open"},
            name="one_open_request_per_document",
        )
    logger.info(
        "Circuit Hub started (storage=%s, approval_ttl_hours=%s)",
        "mongodb" if db is not None else "memory", workflow_engine.approval_ttl_hours
    )


@app.on_event("shutdown")
async def shutdown():
    if client is not None:
        client.close()
