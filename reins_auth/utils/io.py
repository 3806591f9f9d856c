"""File helpers."""

import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import IO


@contextmanager
def atomic_write(path: Path, file_mode: int | None = None, encoding: str = "utf-8") -> Iterator[IO[str]]:
    """Write ``path`` through a sibling temp file and ``os.replace``.

    Readers never observe a partially written file. When ``file_mode`` is
    given it is applied to the temp file before the rename (POSIX only).
    """
    path = Path(path)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            yield f
            f.flush()
            os.fsync(f.fileno())
        if file_mode is not None and os.name != "nt":
            os.chmod(tmp_path, file_mode)
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
