import sys

from . import get
from . import plotting as pl
from . import preprocessing as pp
from ._errors import AllBatchesMissingError, GeneVarError, InsufficientDataError
from ._utilities import session_info, set_env, tqdm_joblib

sys.modules.update({f"{__name__}.{m}": globals()[m] for m in ["pp", "pl", "get"]})

__all__ = [
    "AllBatchesMissingError",
    "GeneVarError",
    "InsufficientDataError",
    "session_info",
    "set_env",
    "tqdm_joblib",
    "pp",
    "pl",
    "get",
]
