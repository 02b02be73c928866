import base64
import gzip
import io
import tarfile
import zipfile
from pathlib import Path
from typing import Dict

import pytest
from fastapi.testclient import TestClient

import render_service
from json_request import ResponseFormat
from plantuml_renderer import DiagramRenderError, RenderedDiagram
from render_service import app


class RecordingRenderer:
    def __init__(self, error_message=None, failure=None):
        self.calls = []
        self.error_message = error_message
        self.failure = failure

    def _result(self, response_format):
        if self.failure:
            raise self.failure
        return RenderedDiagram(b"FAKEIMAGE", response_format.media_type, error_message=self.error_message)

    def render_text(self, source, image_index, response_format):
        self.calls.append({"source": source, "index": image_index, "format": response_format})
        return self._result(response_format)

    def render_file(self, path, image_index, response_format):
        path = Path(path)
        self.calls.append(
            {"path": path, "content": path.read_bytes(), "index": image_index, "format": response_format}
        )
        return self._result(response_format)


@pytest.fixture
def renderer(monkeypatch):
    fake = RecordingRenderer()
    monkeypatch.setattr(render_service, "get_renderer", lambda: fake)
    return fake


@pytest.fixture
def client():
    return TestClient(app)


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _zip(tree: Dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in tree.items():
            archive.writestr(name, content)
    return buffer.getvalue()


def _tar_gz(tree: Dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        for name, content in tree.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            archive.addfile(info, io.BytesIO(content))
    return gzip.compress(buffer.getvalue())


def test_string_request_with_defaults(client, renderer):
    response = client.post("/json", json={"data": "Alice->Bob: hi"})

    assert response.status_code == 200
    assert response.content == b"FAKEIMAGE"
    assert response.headers["content-type"] == "image/png"
    assert "x-job-id" in response.headers
    assert renderer.calls == [{"source": "Alice->Bob: hi", "index": 0, "format": ResponseFormat.PNG}]


def test_single_file_request(client, renderer):
    source = b"@startuml\nAlice -> Bob\n@enduml\n"

    response = client.post(
        "/json",
        json={"inputFormat": "SINGLE_FILE", "data": _b64(source), "imageIndex": 1, "responseFormat": "SVG"},
    )

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/svg+xml"
    call = renderer.calls[0]
    assert call["content"] == source
    assert call["index"] == 1
    assert call["path"].suffix == ".puml"
    assert not call["path"].parent.exists()


def test_archive_request_renders_main_file(client, renderer):
    tree = {"a/b.puml": b"@startuml\n!include c.iuml\n@enduml\n", "a/c.iuml": b"Alice -> Bob\n"}

    response = client.post(
        "/json",
        json={"inputFormat": "ARCHIVE", "data": _b64(_zip(tree)), "mainFile": "a/b.puml", "archiveType": "ZIP"},
    )

    assert response.status_code == 200
    call = renderer.calls[0]
    workspace_dir = call["path"].parents[1]
    assert call["path"] == workspace_dir / "a" / "b.puml"
    assert workspace_dir.name.startswith("plantuml_server")
    assert call["content"] == tree["a/b.puml"]
    assert not workspace_dir.exists()


@pytest.mark.parametrize("archive_type", ["TAR_GZ", "AUTO_DETECT_COMPRESSED"])
def test_archive_request_with_tar_gz(client, renderer, archive_type):
    tree = {"docs/main.puml": b"@startuml\nA -> B\n@enduml\n"}

    response = client.post(
        "/json",
        json={
            "inputFormat": "ARCHIVE",
            "data": _b64(_tar_gz(tree)),
            "mainFile": "docs/main.puml",
            "archiveType": archive_type,
        },
    )

    assert response.status_code == 200
    assert renderer.calls[0]["content"] == tree["docs/main.puml"]


def test_wrong_content_type_is_rejected(client, renderer):
    response = client.post("/json", content=b'{"data": "A -> B"}', headers={"Content-Type": "text/plain"})

    assert response.status_code == 400
    assert "Expected content type application/json" in response.json()["detail"]
    assert renderer.calls == []


def test_missing_data_is_rejected(client, renderer):
    response = client.post("/json", json={"imageIndex": 0})

    assert response.status_code == 400
    assert '"data"' in response.json()["detail"]


def test_invalid_base64_is_rejected(client, renderer):
    response = client.post("/json", json={"inputFormat": "SINGLE_FILE", "data": "not base64!!"})

    assert response.status_code == 400
    assert "base64" in response.json()["detail"]


def test_unpadded_base64_is_accepted(client, renderer):
    source = b"@startuml\nA -> B\n@enduml\n"
    data = base64.b64encode(source).decode("ascii").rstrip("=")
    assert len(data) % 4 != 0

    response = client.post("/json", json={"inputFormat": "SINGLE_FILE", "data": data})

    assert response.status_code == 200
    assert renderer.calls[0]["content"] == source


def test_base64_with_impossible_length_is_rejected(client, renderer):
    response = client.post("/json", json={"inputFormat": "SINGLE_FILE", "data": "QUJDR"})

    assert response.status_code == 400
    assert renderer.calls == []


def test_archive_expanding_past_limit_is_rejected(client, renderer, monkeypatch):
    monkeypatch.setattr(render_service, "MAX_EXTRACTED_BYTES", 1024)
    tree = {"main.puml": b"@startuml\n@enduml\n", "padding.bin": b"\x00" * 100_000}

    response = client.post(
        "/json",
        json={"inputFormat": "ARCHIVE", "data": _b64(_tar_gz(tree)), "mainFile": "main.puml", "archiveType": "TAR_GZ"},
    )

    assert response.status_code == 413
    assert "1024" in response.json()["detail"]
    assert renderer.calls == []


def test_undetectable_archive_is_rejected(client, renderer):
    response = client.post(
        "/json",
        json={
            "inputFormat": "ARCHIVE",
            "data": _b64(b"just some text"),
            "mainFile": "main.puml",
            "archiveType": "AUTO_DETECT",
        },
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Could not detect the archive type of the data"


def test_main_file_outside_archive_is_rejected(client, renderer):
    response = client.post(
        "/json",
        json={
            "inputFormat": "ARCHIVE",
            "data": _b64(_zip({"main.puml": b"x"})),
            "mainFile": "../../etc/passwd",
            "archiveType": "ZIP",
        },
    )

    assert response.status_code == 400
    assert renderer.calls == []


def test_workspace_removed_when_render_fails(client, monkeypatch):
    fake = RecordingRenderer(failure=DiagramRenderError("java exploded"))
    monkeypatch.setattr(render_service, "get_renderer", lambda: fake)

    response = client.post("/json", json={"inputFormat": "SINGLE_FILE", "data": _b64(b"@startuml\n@enduml\n")})

    assert response.status_code == 500
    assert "java exploded" in response.json()["detail"]
    assert not fake.calls[0]["path"].parent.exists()


def test_diagram_error_returns_error_image(client, monkeypatch):
    fake = RecordingRenderer(error_message="Syntax Error?")
    monkeypatch.setattr(render_service, "get_renderer", lambda: fake)

    response = client.post("/json", json={"data": "A -> "})

    assert response.status_code == 400
    assert response.content == b"FAKEIMAGE"
    assert response.headers["x-plantuml-diagram-error"] == "Syntax Error?"


def test_missing_jar_is_a_server_error(client, monkeypatch):
    monkeypatch.setattr(render_service, "_renderer", None)
    monkeypatch.setattr(render_service, "PLANTUML_JAR", "/nonexistent/plantuml.jar")

    response = client.post("/json", json={"data": "A -> B"})

    assert response.status_code == 500
    assert response.json()["detail"] == "Unexpected error processing render request."


def test_oversized_body_is_rejected(client, renderer, monkeypatch):
    monkeypatch.setattr(render_service, "MAX_INPUT_BYTES", 16)

    response = client.post("/json", json={"data": "A -> B: this body is too long"})

    assert response.status_code == 413
    assert renderer.calls == []


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
