"""Model ingestion endpoints."""

import logging
import time

import numpy as np
from fastapi import APIRouter, File, HTTPException, Query, UploadFile

from format_adapters import SUPPORTED_FORMATS
from ingest import ingest_async
from models import BoundingBox, CandidateScore, GeometryResult, OrientRequest, OrientResponse, Vec3
from orientation_optimizer import optimize_orientation

router = APIRouter(tags=["ingest"])
logger = logging.getLogger(__name__)


@router.get("/formats")
def list_formats():
    return {"formats": list(SUPPORTED_FORMATS)}


@router.post("/ingest", response_model=GeometryResult, response_model_by_alias=True)
async def ingest_upload(
    file: UploadFile = File(...),
    auto_orient: bool = Query(False),
):
    """Parse an uploaded model into renderable geometry plus recovered settings.

    Parse failures are not HTTP errors: they come back as a placeholder mesh
    with ``isFallback`` set and ``error`` describing the problem.
    """
    if not file.filename:
        raise HTTPException(status_code=400, detail="Uploaded file has no name")

    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")

    started = time.perf_counter()
    result = await ingest_async(data, file.filename, auto_orient=auto_orient)
    logger.info(
        f"POST /ingest {file.filename} ({len(data) / 1024:.0f} KB) in "
        f"{(time.perf_counter() - started) * 1000:.0f} ms"
    )
    return result


@router.post("/orient", response_model=OrientResponse, response_model_by_alias=True)
def orient_mesh(request: OrientRequest):
    """Choose the best print orientation for an already-ingested mesh."""
    if not request.positions or len(request.positions) % 3 != 0:
        raise HTTPException(status_code=400, detail="positions must be a non-empty list of x, y, z triples")

    positions = np.array(request.positions, dtype=np.float64).reshape(-1, 3)
    if not np.all(np.isfinite(positions)):
        raise HTTPException(status_code=400, detail="positions must be finite numbers")

    oriented = optimize_orientation(positions)
    return OrientResponse(
        name=oriented.name,
        rotation=Vec3.from_seq(oriented.rotation),
        score=oriented.score,
        candidates=[
            CandidateScore(name=c.name, rotation=Vec3.from_seq(c.rotation), score=c.score)
            for c in oriented.candidates
        ],
        positions=oriented.positions.reshape(-1).tolist(),
        indices=request.indices,
        bounding_box=BoundingBox.from_points(oriented.positions),
    )
