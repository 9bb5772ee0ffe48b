from __future__ import annotations

from ._core_base import *  # noqa: F401,F403
from ._core_extract import *  # noqa: F401,F403
from ._core_symbols import *  # noqa: F401,F403
from ._core_build import *  # noqa: F401,F403
from ._core_matrix import *  # noqa: F401,F403
from ._core_runner import *  # noqa: F401,F403
from ._core_orchestration import *  # noqa: F401,F403
