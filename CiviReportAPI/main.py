import logging
from contextlib import asynccontextmanager

# config loads .env.development / .env before anything reads the environment
from CiviReportAPI import config

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from CiviReportAPI.database import engine, Base
from CiviReportAPI.routes import (
    bids_router,
    issues_router,
    notifications_router,
    users_router,
    work_updates_router,
)

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup logic
    logging.info("App startup event")
    yield
    # Shutdown logic
    logging.info("App shutdown event")


app = FastAPI(title="CiviReport API", lifespan=lifespan)

# Create all the tables in the database (make sure models are imported)
Base.metadata.create_all(bind=engine)

# Issue submission, lifecycle, upvotes and comments
app.include_router(issues_router)

# Contractor bids
app.include_router(bids_router)

# Field progress and inspector verification
app.include_router(work_updates_router)

# In-app notifications
app.include_router(notifications_router)

# Current user and worker capacity
app.include_router(users_router)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Root endpoint for testing
@app.get("/")
def read_root():
    return {"message": "Welcome to the CiviReport API"}


# Run the application (for development)
if __name__ == "__main__":
    uvicorn.run("CiviReportAPI.main:app", host="0.0.0.0", port=8000, log_level="debug")
