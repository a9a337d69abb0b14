"""
Root conftest.py: puts the project root on sys.path so the flat modules
(utils, steps, likelihood, love_inversion) import without installation.
"""
import os
import sys

_PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if _PROJECT_ROOT not in sys.path:
    sys.path.insert(0, _PROJECT_ROOT)
