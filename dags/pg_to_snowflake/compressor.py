from __future__ import annotations

import gzip
import logging
import os
import shutil
import time

from pg_to_snowflake.models import Chunk

LOG = logging.getLogger(__name__)

COMPRESSED_SUFFIX = ".gz"
_COPY_BUFFER = 1024 * 1024


def compress_file(path: str, level: int = 6) -> str:
    """
    gzip `path` into `path.gz` and remove `path`.

    The output is deterministic (no embedded name or mtime). The uncompressed file is
    unlinked only once the compressed file is complete; on failure the partial
    output is removed and the uncompressed file is left in place.
    """
    target = path + COMPRESSED_SUFFIX
    tmp = target + ".part"
    t0 = time.perf_counter()
    try:
        with open(path, "rb") as src, open(tmp, "wb") as raw:
            with gzip.GzipFile(filename="", mode="wb", fileobj=raw, compresslevel=level, mtime=0) as gz:
                shutil.copyfileobj(src, gz, _COPY_BUFFER)
        os.replace(tmp, target)
    except BaseException:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise
    os.remove(path)
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Compressed %s -> %s (%d bytes, %.3fs)", path, target, os.path.getsize(target), time.perf_counter() - t0)
    return target


def compress_chunk(chunk: Chunk, level: int = 6) -> Chunk:
    if chunk.compressed:
        return chunk
    chunk.local_path = compress_file(chunk.local_path, level)
    chunk.compressed = True
    return chunk
