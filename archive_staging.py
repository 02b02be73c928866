"""Decompression and extraction of uploaded archives into a request workspace.

An archive upload has at most two layers: an optional compression layer
(gzip, bzip2, xz, lzma) wrapping an archive layer (zip, tar). Each layer is
chosen by an :class:`AlgorithmSelector`, which is either not applicable,
auto-detected from the leading bytes of the data, or named explicitly.
"""

import bz2
import gzip
import io
import logging
import lzma
import tarfile
import zipfile
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Callable, Iterable, Iterator, NamedTuple, Optional

from json_request import (
    ARCHIVE_TAR,
    ARCHIVE_ZIP,
    COMPRESSION_BZIP2,
    COMPRESSION_GZIP,
    COMPRESSION_LZMA,
    COMPRESSION_XZ,
    AlgorithmSelector,
    ArchiveType,
    IllegalRequestError,
)
from stream_io import transfer_to

logger = logging.getLogger("plantuml_json_service.archive")

COMPRESSION_SIGNATURES = (
    (b"\x1f\x8b", COMPRESSION_GZIP),
    (b"BZh", COMPRESSION_BZIP2),
    (b"\xfd7zXZ\x00", COMPRESSION_XZ),
    (b"\x5d\x00\x00", COMPRESSION_LZMA),
)
ZIP_SIGNATURES = (b"PK\x03\x04", b"PK\x05\x06", b"PK\x07\x08")
TAR_MAGIC_OFFSET = 257
TAR_BLOCK_SIZE = tarfile.BLOCKSIZE
SUPPORTED_ZIP_METHODS = {zipfile.ZIP_STORED, zipfile.ZIP_DEFLATED, zipfile.ZIP_BZIP2, zipfile.ZIP_LZMA}

# Errors a codec raises while reading its input. They are treated like any other I/O failure.
READ_ERRORS = (OSError, EOFError, lzma.LZMAError)


class ArchiveTooLargeError(IllegalRequestError):
    """Raised when an archive expands to more bytes than the staging limit allows."""

    def __init__(self, limit: int):
        super().__init__(f"The extracted archive exceeds the limit of {limit} bytes.")
        self.limit = limit


class _BoundedReader:
    """Read-only view of a stream that fails once more than ``limit`` bytes came through it."""

    def __init__(self, source: BinaryIO, limit: int, total_limit: int):
        self._source = source
        self._remaining = limit
        self._total_limit = total_limit

    def read(self, size: int = -1) -> bytes:
        chunk = self._source.read(size)
        self._remaining -= len(chunk)
        if self._remaining < 0:
            raise ArchiveTooLargeError(self._total_limit)
        return chunk


class ArchiveEntry(NamedTuple):
    name: str
    is_dir: bool
    readable: bool
    open: Callable[[], BinaryIO]


def _peek(stream: BinaryIO, size: int) -> bytes:
    position = stream.tell()
    try:
        return stream.read(size)
    finally:
        stream.seek(position)


def detect_compression(stream: BinaryIO) -> str:
    try:
        header = _peek(stream, 6)
    except READ_ERRORS as exc:
        raise OSError("Problem while detecting compression") from exc
    for signature, name in COMPRESSION_SIGNATURES:
        if header.startswith(signature):
            return name
    raise IllegalRequestError("Could not detect the compression of the data")


def _looks_like_tar(header: bytes) -> bool:
    if header[TAR_MAGIC_OFFSET:TAR_MAGIC_OFFSET + 5] == b"ustar":
        return True
    if len(header) < TAR_BLOCK_SIZE:
        return False
    # pre-POSIX archives have no magic, only a valid header checksum
    try:
        tarfile.TarInfo.frombuf(header[:TAR_BLOCK_SIZE], "utf-8", "surrogateescape")
    except tarfile.HeaderError:
        return False
    return True


def detect_archive_type(stream: BinaryIO) -> str:
    try:
        header = _peek(stream, TAR_BLOCK_SIZE)
    except READ_ERRORS as exc:
        raise OSError("Problem while detecting archive type") from exc
    if header.startswith(ZIP_SIGNATURES):
        return ARCHIVE_ZIP
    if _looks_like_tar(header):
        return ARCHIVE_TAR
    raise IllegalRequestError("Could not detect the archive type of the data")


def open_decompressor(name: str, stream: BinaryIO) -> BinaryIO:
    if name == COMPRESSION_GZIP:
        return gzip.GzipFile(fileobj=stream, mode="rb")
    if name == COMPRESSION_BZIP2:
        return bz2.BZ2File(stream)
    if name == COMPRESSION_XZ:
        return lzma.LZMAFile(stream, format=lzma.FORMAT_XZ)
    if name == COMPRESSION_LZMA:
        return lzma.LZMAFile(stream, format=lzma.FORMAT_ALONE)
    raise IllegalRequestError(f"Unsupported compression algorithm '{name}'.")


def _zip_entries(archive: zipfile.ZipFile) -> Iterator[ArchiveEntry]:
    for info in archive.infolist():
        readable = not info.flag_bits & 0x1 and info.compress_type in SUPPORTED_ZIP_METHODS
        yield ArchiveEntry(info.filename, info.is_dir(), readable, lambda info=info: archive.open(info))


def _tar_entries(archive: tarfile.TarFile) -> Iterator[ArchiveEntry]:
    for member in archive:
        # links and device nodes are never materialised in the workspace
        readable = member.isfile() or member.isdir()
        yield ArchiveEntry(member.name, member.isdir(), readable, lambda member=member: archive.extractfile(member))


@contextmanager
def open_extractor(name: str, stream: BinaryIO, max_bytes: Optional[int] = None) -> Iterator[Iterator[ArchiveEntry]]:
    """Open ``stream`` as an archive of type ``name`` and yield its entries in archive order.

    A zip behind a compression layer is buffered in memory first; ``max_bytes``
    caps that buffer.
    """
    try:
        if name == ARCHIVE_ZIP:
            if not isinstance(stream, io.BytesIO):
                # zip needs random access to the central directory
                if max_bytes is None:
                    stream = io.BytesIO(stream.read())
                else:
                    data = stream.read(max_bytes + 1)
                    if len(data) > max_bytes:
                        raise ArchiveTooLargeError(max_bytes)
                    stream = io.BytesIO(data)
            with zipfile.ZipFile(stream) as archive:
                yield _zip_entries(archive)
        elif name == ARCHIVE_TAR:
            with tarfile.open(fileobj=stream, mode="r|") as archive:
                yield _tar_entries(archive)
        else:
            raise IllegalRequestError(f"Unsupported archive type '{name}'.")
    except (zipfile.BadZipFile, zipfile.LargeZipFile, tarfile.TarError) as exc:
        raise IllegalRequestError(f"Could not read the {name} archive: {exc}") from exc


def resolve_compression(stream: BinaryIO, selector: AlgorithmSelector) -> BinaryIO:
    """Strip the compression layer selected by ``selector`` and return the inner stream."""
    if not selector.is_applicable:
        return stream
    if selector.is_auto:
        return resolve_compression(stream, AlgorithmSelector.named(detect_compression(stream)))
    return open_decompressor(selector.name, stream)


def resolve_archiving(stream: BinaryIO, selector: AlgorithmSelector, max_bytes: Optional[int] = None):
    """Return a context manager over the entries of the archive layer selected by ``selector``."""
    if not selector.is_applicable:
        raise ValueError("An archiving algorithm is required to extract an archive.")
    if selector.is_auto:
        return resolve_archiving(stream, AlgorithmSelector.named(detect_archive_type(stream)), max_bytes)
    return open_extractor(selector.name, stream, max_bytes)


def _resolve_inside(root: Path, relative: str) -> Path:
    target = (root / relative).resolve()
    if target != root and root not in target.parents:
        raise IllegalRequestError(f"The path '{relative}' points outside of the archive.")
    return target


def extract_entries(workspace_dir: Path, entries: Iterable[ArchiveEntry], max_bytes: Optional[int] = None) -> int:
    """Write ``entries`` below ``workspace_dir`` in order and return the number of files written.

    With ``max_bytes`` set, extraction stops with :class:`ArchiveTooLargeError`
    as soon as the files written so far add up to more than that.
    """
    root = Path(workspace_dir).resolve()
    written = 0
    extracted = 0
    for entry in entries:
        if not entry.readable:
            logger.warning("Could not extract an entry: %s", entry.name)
            continue
        target = _resolve_inside(root, entry.name)
        if entry.is_dir:
            target.mkdir(parents=True, exist_ok=True)
            continue
        if target == root:
            raise IllegalRequestError(f"The archive entry '{entry.name}' has no file name.")
        target.parent.mkdir(parents=True, exist_ok=True)
        with entry.open() as source, open(target, "wb") as destination:
            if max_bytes is not None:
                source = _BoundedReader(source, max_bytes - extracted, max_bytes)
            size = transfer_to(source, destination)
        logger.debug("Extracted %s (%s bytes)", entry.name, size)
        extracted += size
        written += 1
    return written


def stage_archive(
    workspace_dir: Path, stream: BinaryIO, archive_type: ArchiveType, max_bytes: Optional[int] = None
) -> int:
    """Decompress and extract ``stream`` into ``workspace_dir`` as described by ``archive_type``."""
    inner = resolve_compression(stream, archive_type.compression)
    try:
        with resolve_archiving(inner, archive_type.archiving, max_bytes) as entries:
            written = extract_entries(workspace_dir, entries, max_bytes)
    finally:
        if inner is not stream:
            inner.close()
    logger.info("Staged %s file(s) from %s archive into %s", written, archive_type.name, workspace_dir)
    return written


def resolve_main_file(workspace_dir: Path, main_file: str) -> Path:
    root = Path(workspace_dir).resolve()
    target = _resolve_inside(root, main_file)
    if not target.is_file():
        raise IllegalRequestError(f"The main file '{main_file}' does not exist in the archive.")
    return target
