from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from .config import CORS_ORIGINS, configure_logging
from .db import init_db
from .routers import cells as cells_router
from .routers import schema as schema_router

configure_logging()
init_db()

app = FastAPI(title="kartogrid")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(schema_router.router, prefix="/schema", tags=["schema"])
app.include_router(cells_router.router, prefix="/cells", tags=["cells"])
