import contextlib
from importlib.metadata import PackageNotFoundError, version
from typing import Optional

import joblib
import scanpy as sc

_STACK = [
    "scanpy_genevar",
    "scanpy",
    "anndata",
    "numpy",
    "scipy",
    "pandas",
    "scikit-misc",
    "numba",
    "joblib",
]


def session_info() -> None:
    import datetime
    import platform
    import sys

    print("*" * 64)
    print(f"Execution date and time: {datetime.datetime.now()}")
    print("*" * 64)
    print(f"Python {sys.version.split()[0]} on {platform.platform()}")
    for pkg in _STACK:
        try:
            print(f"{pkg:<16}{version(pkg.replace('_', '-'))}")
        except PackageNotFoundError:
            print(f"{pkg:<16}not installed")
    print("*" * 64)


def set_env(
    verbosity: int = 4,
    n_jobs: Optional[int] = 8,
    print_info: bool = True,
) -> None:
    sc.settings.verbosity = verbosity
    sc.settings.n_jobs = n_jobs
    if print_info:
        session_info()


@contextlib.contextmanager
def tqdm_joblib(tqdm_object):
    """Context manager to patch joblib to report into tqdm progress bar given as argument"""

    def tqdm_print_progress(self):
        if self.n_completed_tasks > tqdm_object.n:
            n_completed = self.n_completed_tasks - tqdm_object.n
            tqdm_object.update(n=n_completed)

    original_print_progress = joblib.parallel.Parallel.print_progress
    joblib.parallel.Parallel.print_progress = tqdm_print_progress

    try:
        yield tqdm_object
    finally:
        joblib.parallel.Parallel.print_progress = original_print_progress
        tqdm_object.close()


__all__ = [
    "session_info",
    "set_env",
    "tqdm_joblib",
]
