from typing import BinaryIO

DEFAULT_BUFFER_SIZE = 8192


def transfer_to(source: BinaryIO, destination: BinaryIO, buffer_size: int = DEFAULT_BUFFER_SIZE) -> int:
    """Copy every byte from ``source`` into ``destination`` and return the count.

    Neither stream is closed. If reading or writing fails part way, both streams
    may be left in an inconsistent state and the caller should close them.
    """
    if destination is None:
        raise TypeError("destination must not be None")
    transferred = 0
    while True:
        chunk = source.read(buffer_size)
        if not chunk:
            break
        destination.write(chunk)
        transferred += len(chunk)
    return transferred
