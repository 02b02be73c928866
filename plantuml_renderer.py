import logging
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from json_request import ResponseFormat

logger = logging.getLogger("plantuml_json_service.renderer")

DEFAULT_JAVA_BINARY = "java"
MAX_ERROR_MESSAGE_LENGTH = 200


class DiagramRenderError(RuntimeError):
    """Raised when PlantUML could not be run or produced no output at all."""


@dataclass
class RenderedDiagram:
    content: bytes
    media_type: str
    error_message: Optional[str] = None
    elapsed: float = 0.0


def _summarize(stderr: str) -> str:
    summary = " ".join(stderr.split())
    return summary[:MAX_ERROR_MESSAGE_LENGTH]


class PlantUMLRenderer:
    """Renders PlantUML sources by piping them through ``plantuml.jar``.

    ``allow_include`` is fixed at construction time and decides whether the
    diagram may pull in other files: it maps onto PlantUML's security profile.
    """

    def __init__(
        self,
        jar_path: str,
        *,
        java_binary: str = DEFAULT_JAVA_BINARY,
        allow_include: bool = False,
        timeout: Optional[float] = None,
    ):
        self.jar_path = jar_path
        self.java_binary = java_binary
        self.allow_include = allow_include
        self.timeout = timeout

    @property
    def security_profile(self) -> str:
        return "UNSECURE" if self.allow_include else "SANDBOX"

    def build_command(
        self,
        image_index: int,
        response_format: ResponseFormat,
        file_dir: Optional[Path] = None,
    ) -> List[str]:
        cmd = [
            self.java_binary,
            "-Djava.awt.headless=true",
            f"-DPLANTUML_SECURITY_PROFILE={self.security_profile}",
            "-jar",
            self.jar_path,
            "-pipe",
            "-charset",
            "UTF-8",
            response_format.option,
            "-pipeimageindex",
            str(image_index),
        ]
        if file_dir is not None:
            cmd.extend(["-filedir", str(file_dir)])
        return cmd

    def render_text(self, source: str, image_index: int, response_format: ResponseFormat) -> RenderedDiagram:
        return self._run(source.encode("utf-8"), image_index, response_format)

    def render_file(self, path: Path, image_index: int, response_format: ResponseFormat) -> RenderedDiagram:
        path = Path(path)
        # relative includes resolve against the directory of the rendered file
        return self._run(path.read_bytes(), image_index, response_format, file_dir=path.parent)

    def _run(
        self,
        source: bytes,
        image_index: int,
        response_format: ResponseFormat,
        file_dir: Optional[Path] = None,
    ) -> RenderedDiagram:
        cmd = self.build_command(image_index, response_format, file_dir)
        logger.info("Running PlantUML: %s", " ".join(cmd))
        start = time.perf_counter()
        try:
            proc = subprocess.run(
                cmd,
                input=source,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=str(file_dir) if file_dir is not None else None,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            logger.error("PlantUML did not finish within %ss", self.timeout)
            raise DiagramRenderError(f"PlantUML did not finish within {self.timeout}s") from exc
        except OSError as exc:
            logger.error("Could not start PlantUML with %s: %s", self.java_binary, exc)
            raise DiagramRenderError(f"Could not start {self.java_binary}: {exc}") from exc
        elapsed = time.perf_counter() - start

        stderr = proc.stderr.decode("utf-8", errors="ignore")
        if proc.returncode == 0:
            if stderr:
                logger.info("PlantUML stderr:\n%s", stderr)
            return RenderedDiagram(proc.stdout, response_format.media_type, elapsed=elapsed)

        if not proc.stdout:
            logger.error("PlantUML failed (returncode=%s): %s", proc.returncode, stderr)
            raise DiagramRenderError(stderr or f"PlantUML exited with status {proc.returncode}")

        # PlantUML still draws an error image for diagrams with syntax errors
        logger.warning("PlantUML reported a diagram error (returncode=%s): %s", proc.returncode, stderr)
        return RenderedDiagram(
            proc.stdout,
            response_format.media_type,
            error_message=_summarize(stderr) or f"PlantUML exited with status {proc.returncode}",
            elapsed=elapsed,
        )
