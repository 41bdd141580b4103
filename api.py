"""
Issue Submission API

FastAPI front for the submission validation pipeline.

Endpoints:
- POST /issues - Submit an issue (multipart form, optional photo)
- GET /issues - List accepted issues
- GET /issues/{issue_id} - Get one issue
- GET /health - Health check with geocoding cache stats
"""

import asyncio
import math
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import uvicorn

from config import configure_logging, load_settings
from models import HashRecord, SubmissionContext, SubmissionDecision
from pipeline import HashStore, build_pipeline


# =============================================================================
# CONFIG
# =============================================================================

settings = load_settings()
configure_logging(settings.log_level)

UPLOAD_DIR = settings.upload_dir
UPLOAD_DIR.mkdir(parents=True, exist_ok=True)

# Allowed file extensions
ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".tif", ".tiff", ".webp", ".heic"}


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class Issue(BaseModel):
    id: int
    title: str
    description: str = ""
    latitude: float
    longitude: float
    address: Optional[str] = None
    photo_url: Optional[str] = None
    status: str = "Pending"
    needs_review: bool = False
    phash: Optional[str] = None
    similar_images: List[Dict[str, Any]] = []
    created_at: str


# =============================================================================
# STORAGE
# =============================================================================

class IssueStore(HashStore):
    """Issue storage (in production, use a database)."""

    def __init__(self):
        self._issues: Dict[int, Issue] = {}
        self._next_id = 1
        self._lock = threading.Lock()

    def create(self, **fields) -> Issue:
        with self._lock:
            issue = Issue(id=self._next_id, created_at=datetime.now().isoformat(), **fields)
            self._issues[issue.id] = issue
            self._next_id += 1
            return issue

    def get(self, issue_id: int) -> Optional[Issue]:
        with self._lock:
            return self._issues.get(issue_id)

    def list(self) -> List[Issue]:
        with self._lock:
            return sorted(self._issues.values(), key=lambda i: i.id, reverse=True)

    def all_hashes(self) -> List[HashRecord]:
        with self._lock:
            return [
                HashRecord(issue_id=issue.id, phash=issue.phash)
                for issue in self._issues.values()
                if issue.phash
            ]


store = IssueStore()
pipeline = build_pipeline(settings, hash_store=store)


# =============================================================================
# APP
# =============================================================================

app = FastAPI(
    title="Issue Submission API",
    description="Validates citizen-submitted issue photos before they are stored",
    version="1.0.0"
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# PROCESSING LOGIC
# =============================================================================

async def save_upload(file: UploadFile) -> Path:
    """Store an uploaded photo and return its path."""
    ext = Path(file.filename or "").suffix.lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise HTTPException(
            status_code=400,
            detail=f"File type {ext or 'unknown'} not allowed. "
                   f"Allowed: {', '.join(sorted(ALLOWED_EXTENSIONS))}"
        )

    file_path = UPLOAD_DIR / f"{uuid.uuid4()}{ext}"
    content = await file.read()
    with open(file_path, "wb") as f:
        f.write(content)
    return file_path


async def run_pipeline(ctx: SubmissionContext) -> SubmissionDecision:
    """Run the blocking pipeline off the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, pipeline.validate, ctx)


def _json_safe(value: Any) -> Any:
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    return value


# =============================================================================
# ENDPOINTS
# =============================================================================

@app.get("/")
async def root():
    return {
        "service": "Issue Submission API",
        "version": "1.0.0",
        "endpoints": {
            "POST /issues": "Submit an issue with an optional photo",
            "GET /issues": "List issues",
            "GET /issues/{issue_id}": "Get issue",
            "GET /health": "Health check"
        }
    }


@app.post("/issues", response_model=Issue, status_code=201)
async def create_issue(
    title: str = Form(...),
    latitude: str = Form(...),
    longitude: str = Form(...),
    description: str = Form(""),
    photo_url: Optional[str] = Form(None),
    file: Optional[UploadFile] = File(None),
):
    """Validate and store a new issue."""
    file_path = await save_upload(file) if file is not None and file.filename else None

    ctx = SubmissionContext(
        latitude=latitude,
        longitude=longitude,
        title=title,
        description=description,
        image_path=str(file_path) if file_path else None,
        photo_url=photo_url or None,
    )
    decision = await run_pipeline(ctx)

    if not decision.accepted:
        if file_path is not None:
            file_path.unlink(missing_ok=True)
        return JSONResponse(status_code=400, content=_json_safe(decision.rejection.to_dict()))

    return store.create(
        title=title,
        description=description,
        latitude=float(latitude),
        longitude=float(longitude),
        address=decision.address,
        photo_url=f"/uploads/{file_path.name}" if file_path else photo_url,
        needs_review=decision.needs_review,
        phash=decision.phash,
        similar_images=[s.to_dict() for s in decision.similar_images],
    )


@app.get("/issues", response_model=List[Issue])
async def list_issues():
    return store.list()


@app.get("/issues/{issue_id}", response_model=Issue)
async def get_issue(issue_id: int):
    issue = store.get(issue_id)
    if issue is None:
        raise HTTPException(status_code=404, detail="Issue not found")
    return issue


# =============================================================================
# HEALTH
# =============================================================================

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "issues_count": len(store.list()),
        "geocoding_cache": pipeline.geocoder.cache.stats(),
    }


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
