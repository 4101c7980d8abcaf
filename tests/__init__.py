import os
import sys

# Add the parent directory to the path so we can import modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

# Keep tests self-contained: no Redis, no log files
os.environ["ENABLE_REDIS"] = "false"
os.environ["LOG_TO_FILE"] = "false"
