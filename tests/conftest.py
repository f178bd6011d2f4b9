"""
pytest configuration for the gallery pipeline tests.

Adds src directory to Python path for imports and sets up test environment.
"""

import os
import sys
from pathlib import Path

# Human-readable logs if a test configures file logging
os.environ.setdefault("JSON_LOGS", "false")

# Add src directory to Python path
src_dir = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_dir))
