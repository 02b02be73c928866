import asyncio
import base64
import binascii
import io
import logging
import os
import time
import uuid
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import Response

from archive_staging import ArchiveTooLargeError, resolve_main_file, stage_archive
from json_request import (
    EXPECTED_MIME_TYPE,
    IllegalRequestError,
    InputFormat,
    RenderRequest,
    parse_request,
)
from plantuml_renderer import DiagramRenderError, PlantUMLRenderer, RenderedDiagram
from workspace import workspace

repo_dir = os.path.dirname(os.path.abspath(__file__))

env_path = os.path.join(repo_dir, ".env")
venv_env_path = os.path.join(repo_dir, ".venv", ".env")
load_dotenv(dotenv_path=venv_env_path, override=False)
load_dotenv(dotenv_path=env_path, override=True)

DEFAULT_RENDER_TIMEOUT = 60.0
MAX_INPUT_BYTES = 50 * 1024 * 1024
MAX_EXTRACTED_BYTES = 200 * 1024 * 1024
SINGLE_FILE_SUFFIX = ".puml"

# Read once at startup; the renderer is built with this value and never re-reads it.
ALLOW_PLANTUML_INCLUDE = os.getenv("ALLOW_PLANTUML_INCLUDE", "").strip().lower() == "true"
PLANTUML_JAR = os.getenv("PLANTUML_JAR", os.path.join(repo_dir, "plantuml.jar"))
JAVA_BINARY = os.getenv("JAVA_BINARY", "java")
PLANTUML_RENDER_TIMEOUT = float(os.getenv("PLANTUML_RENDER_TIMEOUT", DEFAULT_RENDER_TIMEOUT))

log_dir = os.getenv("PLANTUML_SERVICE_LOG_DIR", os.path.join(repo_dir, "logs"))
os.makedirs(log_dir, exist_ok=True)
service_log = os.path.join(log_dir, "render_service.log")

logger = logging.getLogger("plantuml_json_service")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.FileHandler(service_log)
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s", "%Y-%m-%d %H:%M:%S")
    )
    logger.addHandler(handler)
    logger.propagate = False

app = FastAPI(title="PlantUML JSON Render Service")

_renderer: Optional[PlantUMLRenderer] = None


def get_renderer() -> PlantUMLRenderer:
    global _renderer
    if _renderer:
        return _renderer
    if not os.path.exists(PLANTUML_JAR):
        raise RuntimeError(f"PlantUML jar not found at {PLANTUML_JAR}; set PLANTUML_JAR.")
    _renderer = PlantUMLRenderer(
        PLANTUML_JAR,
        java_binary=JAVA_BINARY,
        allow_include=ALLOW_PLANTUML_INCLUDE,
        timeout=PLANTUML_RENDER_TIMEOUT,
    )
    logger.info(
        "PlantUML renderer ready (jar=%s, include=%s, timeout=%ss)",
        PLANTUML_JAR,
        ALLOW_PLANTUML_INCLUDE,
        PLANTUML_RENDER_TIMEOUT,
    )
    return _renderer


def decode_payload(data: str) -> bytes:
    # padding is optional on input; the alphabet is still checked strictly
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.b64decode(padded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise IllegalRequestError("The given data is not valid base64.") from exc


def render_request(request_model: RenderRequest, renderer: PlantUMLRenderer) -> RenderedDiagram:
    """Render ``request_model`` with ``renderer``, staging file inputs in a throwaway workspace."""
    index = request_model.image_index
    response_format = request_model.response_format

    if request_model.input_format is InputFormat.STRING:
        return renderer.render_text(request_model.input_data, index, response_format)

    payload = decode_payload(request_model.input_data)
    with workspace() as tmp_dir:
        logger.info("staging %s bytes in %s", len(payload), tmp_dir)
        if request_model.input_format is InputFormat.SINGLE_FILE:
            source_path = tmp_dir / f"{uuid.uuid4().hex}{SINGLE_FILE_SUFFIX}"
            source_path.write_bytes(payload)
            return renderer.render_file(source_path, index, response_format)

        with io.BytesIO(payload) as stream:
            stage_archive(tmp_dir, stream, request_model.archive_type, max_bytes=MAX_EXTRACTED_BYTES)
        main_path = resolve_main_file(tmp_dir, request_model.main_file)
        return renderer.render_file(main_path, index, response_format)


def _header_safe(value: str) -> str:
    return value.encode("latin-1", errors="replace").decode("latin-1")


@app.post("/json")
async def render_json(request: Request):
    job_id = str(uuid.uuid4())
    body = await request.body()
    logger.info("job %s: received /json request (%s bytes)", job_id, len(body))

    if len(body) > MAX_INPUT_BYTES:
        logger.warning("job %s: body size %s exceeds limit of %s bytes", job_id, len(body), MAX_INPUT_BYTES)
        raise HTTPException(
            status_code=413,
            detail=f"Request body is {len(body)} bytes which exceeds the 50 MB limit.",
        )

    try:
        request_model = parse_request(request.headers.get("content-type"), body)
    except IllegalRequestError as exc:
        logger.warning("job %s: validation error: %s", job_id, exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    logger.info(
        "job %s: index=%s responseFormat=%s inputFormat=%s mainFile=%s archiveType=%s dataLen=%s",
        job_id,
        request_model.image_index,
        request_model.response_format.name,
        request_model.input_format.name,
        request_model.main_file,
        request_model.archive_type.name if request_model.archive_type else None,
        len(request_model.input_data),
    )

    start = time.perf_counter()
    try:
        diagram = await asyncio.to_thread(render_request, request_model, get_renderer())
    except ArchiveTooLargeError as exc:
        logger.warning("job %s: archive too large: %s", job_id, exc)
        raise HTTPException(status_code=413, detail=str(exc)) from exc
    except IllegalRequestError as exc:
        logger.warning("job %s: rejected input data: %s", job_id, exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except DiagramRenderError as exc:
        logger.exception("job %s: render failed", job_id)
        raise HTTPException(status_code=500, detail=f"Render failed: {exc}") from exc
    except Exception as exc:
        logger.exception("job %s: unexpected error during /json render", job_id)
        raise HTTPException(status_code=500, detail="Unexpected error processing render request.") from exc
    elapsed = time.perf_counter() - start

    headers = {
        "X-Job-Id": job_id,
        "X-Render-Time": f"{elapsed:.2f}",
    }
    status_code = 200
    if diagram.error_message:
        status_code = 400
        headers["X-PlantUML-Diagram-Error"] = _header_safe(diagram.error_message)
    logger.info(
        "job %s: completed /json render (%s bytes, %.2fs, status=%s)",
        job_id,
        len(diagram.content),
        elapsed,
        status_code,
    )
    return Response(content=diagram.content, media_type=diagram.media_type, status_code=status_code, headers=headers)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/")
async def root():
    return {
        "message": "PlantUML JSON render API",
        "submit_endpoint": "/json",
        "content_type": EXPECTED_MIME_TYPE,
        "docs": "/docs",
        "example_string": (
            "curl -H 'Content-Type: application/json' -d '{\"data\": \"Alice -> Bob: hi\"}' "
            "http://localhost:8000/json --output diagram.png"
        ),
        "example_archive": (
            "curl -H 'Content-Type: application/json' "
            "-d '{\"inputFormat\": \"ARCHIVE\", \"archiveType\": \"TAR_GZ\", \"mainFile\": \"docs/main.puml\", "
            "\"data\": \"<base64 tar.gz>\", \"responseFormat\": \"SVG\"}' "
            "http://localhost:8000/json --output diagram.svg"
        ),
    }
