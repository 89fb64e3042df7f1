import io
import itertools
import os
import random
import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

import jwt
import pytest
from fastapi.testclient import TestClient
from PIL import Image, ImageDraw
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

DEFAULT_SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"
SQLALCHEMY_DATABASE_URL = os.getenv("TEST_DATABASE_URL") or DEFAULT_SQLALCHEMY_DATABASE_URL

# Ensure the application itself uses the test database instead of the production default.
os.environ.setdefault("DATABASE_URL", SQLALCHEMY_DATABASE_URL)
os.environ.setdefault("EMAIL_ENABLED", "false")

from CiviReportAPI.main import app
from CiviReportAPI.config import ALGORITHM, SECRET_KEY
from CiviReportAPI.constants import IssueCategory, IssueStatus, Role
from CiviReportAPI.database import Base, _create_engine, get_db
from CiviReportAPI.lifecycle import IssueLifecycle, TransitionRequest
from CiviReportAPI.models import Issue, User
from CiviReportAPI.repositories import IssueRepository
from CiviReportAPI.storage import BlobNotFound, BlobStoreError, get_blob_store


engine = _create_engine(SQLALCHEMY_DATABASE_URL)

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

try:
    with engine.begin() as connection:
        Base.metadata.drop_all(bind=connection)
        Base.metadata.create_all(bind=connection)
except OperationalError as exc:
    raise RuntimeError(
        "Unable to initialize the database schema for tests. "
        "Set TEST_DATABASE_URL to a reachable database URL or ensure SQLite is available."
    ) from exc


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


class InMemoryBlobStore:
    """Blob store double keeping photos in a dict."""

    def __init__(self):
        self.blobs = {}
        self.fail_uploads = False

    def put(self, key, data, content_type=None):
        if self.fail_uploads:
            raise BlobStoreError(f"Failed to upload {key}: storage offline")
        self.blobs[key] = (data, content_type)
        return key

    def get(self, key):
        if key not in self.blobs:
            raise BlobNotFound(f"Blob not found: {key}")
        return self.blobs[key][0]


blob_store = InMemoryBlobStore()

app.dependency_overrides[get_db] = override_get_db
app.dependency_overrides[get_blob_store] = lambda: blob_store


@pytest.fixture(scope="module")
def test_client():
    with TestClient(app) as client:
        yield client


@pytest.fixture
def db_session():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


# -- factories ---------------------------------------------------------------

_counter = itertools.count(1)


def unique_location():
    """A point several kilometres away from every other test's issues."""
    n = next(_counter)
    return 10.0 + n * 0.05, 20.0 + n * 0.05


def create_user(db, role: Role, **fields) -> User:
    if role == Role.WORKER:
        # Far from every test location unless a test places the worker
        fields.setdefault("work_latitude", -45.0)
        fields.setdefault("work_longitude", -120.0)
        fields.setdefault("work_radius_km", 0.5)
    user = User(
        email=f"{role.value.lower()}-{uuid.uuid4().hex[:10]}@example.com",
        name=f"Test {role.value.title()}",
        role=role.value,
        **fields,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def get_token_for_user(user_id: int) -> str:
    payload = {"sub": str(user_id), "exp": datetime.now(timezone.utc) + timedelta(hours=1)}
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {get_token_for_user(user.id)}"}


def create_issue(db, reporter: User, **fields) -> Issue:
    if "latitude" not in fields or "longitude" not in fields:
        fields["latitude"], fields["longitude"] = unique_location()
    fields.setdefault("title", "Broken streetlight")
    fields.setdefault("description", "The light at the corner has been out for a week")
    fields.setdefault("category", IssueCategory.UTILITIES.value)
    repo = IssueRepository(db)
    issue = repo.create(reporter_id=reporter.id, **fields)
    repo.record_change(issue.id, None, IssueStatus.REPORTED, reporter)
    db.commit()
    db.refresh(issue)
    return issue


def move(db, issue: Issue, actor: User, new_status: IssueStatus, **fields) -> Issue:
    """Apply a transition from the issue's persisted status."""
    current = IssueRepository(db).require(issue.id).status
    return IssueLifecycle(db).transition(
        issue.id,
        actor,
        TransitionRequest(expected_status=IssueStatus(current), new_status=new_status, **fields),
    )


# -- images ------------------------------------------------------------------

def make_scene(seed: int, size=(320, 240)) -> Image.Image:
    """A photo-like image: overlapping random shapes plus light noise."""
    rng = random.Random(seed)
    width, height = size
    img = Image.new("RGB", size, tuple(rng.randint(0, 255) for _ in range(3)))
    draw = ImageDraw.Draw(img)
    for _ in range(30):
        x0, y0 = rng.randint(-40, width), rng.randint(-40, height)
        x1, y1 = x0 + rng.randint(20, width // 2), y0 + rng.randint(20, height // 2)
        color = tuple(rng.randint(0, 255) for _ in range(3))
        if rng.random() < 0.5:
            draw.rectangle([x0, y0, x1, y1], fill=color)
        else:
            draw.ellipse([x0, y0, x1, y1], fill=color)
    noise = Image.effect_noise(size, 40).convert("RGB")
    return Image.blend(img, noise, 0.08)


def jpeg_bytes(img: Image.Image, quality: int = 92) -> bytes:
    buf = io.BytesIO()
    img.convert("RGB").save(buf, format="JPEG", quality=quality)
    return buf.getvalue()


def png_bytes(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()
