import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

logger = logging.getLogger("plantuml_json_service.workspace")

DEFAULT_PREFIX = "plantuml_server"


def create_workspace(prefix: str = DEFAULT_PREFIX) -> Path:
    return Path(tempfile.mkdtemp(prefix=prefix))


def destroy_workspace(path: Path) -> None:
    """Delete ``path`` and everything below it, files before their directories."""
    for current, dirnames, filenames in os.walk(path, topdown=False):
        for name in filenames:
            os.unlink(os.path.join(current, name))
        for name in dirnames:
            child = os.path.join(current, name)
            # os.walk lists symlinks to directories here without descending into them
            if os.path.islink(child):
                os.unlink(child)
            else:
                os.rmdir(child)
    os.rmdir(path)


@contextmanager
def workspace(prefix: str = DEFAULT_PREFIX) -> Iterator[Path]:
    path = create_workspace(prefix)
    logger.info("created workspace %s", path)
    try:
        yield path
    except BaseException:
        # the error from the body wins over a failed cleanup
        try:
            destroy_workspace(path)
        except OSError:
            logger.exception("could not remove workspace %s", path)
        else:
            logger.info("removed workspace %s", path)
        raise
    destroy_workspace(path)
    logger.info("removed workspace %s", path)
