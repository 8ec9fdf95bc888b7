import os
import sys


# Put `src/backend` on sys.path so `common.*` and `pipelines.*` import
# without installing the package first.
BACKEND_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if BACKEND_DIR not in sys.path:
    sys.path.insert(0, BACKEND_DIR)
