"""
Test package for JITGuard.
"""

# Allow deliberate sys.path manipulation for test imports
# ruff: noqa: E402

import sys
from pathlib import Path

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))
