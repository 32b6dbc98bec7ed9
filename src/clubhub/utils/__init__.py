import os
import re
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from importlib import metadata
from pathlib import Path
from time import time

root_dir = Path(__file__).resolve().parents[3]

data_dir_path = Path(os.getenv("CLUBHUB_DATA_DIR", root_dir / "data"))
alembic_dir = root_dir / "src" / "alembic"


def get_version() -> str:
    pyproject = root_dir / "pyproject.toml"
    if not pyproject.exists():
        return metadata.version("clubhub-jobs")

    with open(pyproject) as file:
        pyproject_toml = file.read()

    match = re.search(r'version = "(.+)"', pyproject_toml)
    if match:
        version = match.group(1)
    else:
        raise ValueError("Could not find version in pyproject.toml")
    return version


@contextmanager
def benchmark(
    *,
    log: Callable[[float], None] | None,
    decimal_places: int = 3,
) -> Iterator[None]:
    """Context manager for timing a block and reporting the elapsed seconds."""

    start_time = time()

    try:
        yield
    finally:
        elapsed = round(time() - start_time, decimal_places)

        if log:
            log(elapsed)
