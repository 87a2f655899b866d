import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent


def pytest_configure():
    # `import toolhost` from a plain checkout, no editable install needed.
    src = str(ROOT / "src")
    if src not in sys.path:
        sys.path.insert(0, src)
