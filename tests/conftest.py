"""Root conftest.py for pytest configuration.

Adds the project root and src/ to sys.path so the package and shared test
doubles (``tests.fakes``) import without an editable install.
"""

from __future__ import annotations

import sys
from pathlib import Path

project_root = Path(__file__).parent.parent
for path in (project_root, project_root / "src"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))
