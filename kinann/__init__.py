"""Symbolic networks, subexpression optimizer and calibration for backlash-afflicted axes."""

from . import calibration as _calibration
from . import errors as _errors
from . import expression as _expression
from . import frame as _frame
from . import optimizer as _optimizer
from . import symbolic as _symbolic
from .calibration import *  # noqa: F401,F403
from .errors import *  # noqa: F401,F403
from .expression import *  # noqa: F401,F403
from .frame import *  # noqa: F401,F403
from .optimizer import *  # noqa: F401,F403
from .symbolic import *  # noqa: F401,F403

__version__ = "0.1.0"

__all__ = (
    _errors.__all__
    + _expression.__all__
    + _optimizer.__all__
    + _symbolic.__all__
    + _calibration.__all__
    + _frame.__all__
)
