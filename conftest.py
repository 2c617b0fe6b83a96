"""
Pytest configuration.
The testing environment must be set before the app (and its settings) are imported.
"""
import os

os.environ["TESTING"] = "True"
os.environ["DEBUG"] = "False"
