# Copyright (c) 2025 Marcus Dillavou <line72@line72.net>
# Part of the Crateflow Project
# Released under the AGPLv3 or later

# Parse a library export in a separate process.
#
# Large exports take a while to read and parse. The worker reads the
# file in chunks, posting coarse progress (every 5% of bytes) back on
# a queue, then parses it and posts the resulting Library. The caller
# blocks in start_background_parse() and gets progress callbacks as
# messages arrive.

import logging
import multiprocessing
import os
from queue import Empty
from typing import Callable, Optional

from .errors import CrateflowError, LibraryValidationError, ParseWorkerError
from .records.library import Library
from .xml_parser import parse_library_xml

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
PROGRESS_STEP = 5


def read_file_with_progress(
    path: str,
    on_progress: Optional[Callable[[int], None]] = None,
    chunk_size: int = CHUNK_SIZE,
) -> str:
    total = os.path.getsize(path)
    read = 0
    next_mark = 0
    chunks = []

    with open(path, "rb") as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            chunks.append(chunk)
            read += len(chunk)

            if total > 0 and on_progress is not None:
                percent = int(read * 100 / total)
                if percent >= next_mark:
                    on_progress(percent)
                    # skip marks already passed by a large chunk
                    while next_mark <= percent:
                        next_mark += PROGRESS_STEP

    return b"".join(chunks).decode("utf-8")


def parse_worker(xml_path, result_queue):
    try:
        text = read_file_with_progress(
            xml_path, on_progress=lambda x: result_queue.put(("PROGRESS", x))
        )
        library = parse_library_xml(text)
        result_queue.put(("PROGRESS", 100))
        result_queue.put(("DONE", library))
    except LibraryValidationError as e:
        result_queue.put(("INVALID", str(e), e.issues))
    except (OSError, UnicodeDecodeError, CrateflowError) as e:
        result_queue.put(("ERROR", str(e)))


def start_background_parse(
    xml_path: str, on_progress: Optional[Callable[[int], None]] = None
) -> Library:
    """Parse xml_path in a child process and return the Library.

    Raises LibraryValidationError with the full issue list when the
    export is invalid, and ParseWorkerError when the worker fails.
    """
    result_queue = multiprocessing.Queue()
    process = multiprocessing.Process(target=parse_worker, args=(xml_path, result_queue))
    process.start()

    try:
        while True:
            try:
                message = result_queue.get(timeout=0.1)
            except Empty:
                if process.is_alive():
                    continue
                # the worker may have exited right after its last put
                try:
                    message = result_queue.get(timeout=1)
                except Empty:
                    raise ParseWorkerError(
                        f"Parser worker exited with code {process.exitcode}."
                    )

            match message:
                case ("PROGRESS", percent):
                    if on_progress is not None:
                        on_progress(percent)
                case ("DONE", library):
                    return library
                case ("INVALID", error, issues):
                    raise LibraryValidationError(error, issues)
                case ("ERROR", error):
                    raise ParseWorkerError(error)
                case _:
                    logger.warning(f"parse worker sent unknown message {message}")
    finally:
        process.join(timeout=5)
        if process.is_alive():
            process.terminate()
