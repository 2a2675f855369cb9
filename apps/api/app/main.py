import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from routes_ingest import router as ingest_router

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Print Model Ingest API")

# Configure CORS to allow web UI to access API
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "http://localhost:8080,http://127.0.0.1:8080").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(ingest_router)


@app.get("/")
def root():
    return {
        "name": "Print Model Ingest API",
        "version": "1.0.0",
        "endpoints": {
            "health": "/healthz",
            "formats": "GET /formats",
            "ingest": "POST /ingest",
            "orient": "POST /orient",
        }
    }


@app.get("/healthz")
def health():
    return {"status": "ok"}
