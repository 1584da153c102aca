import os

# Keep test runs from writing the application log file.
os.environ.setdefault("LOG_FILE", "")
