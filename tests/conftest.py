import os

# Importing app builds a default relay from the environment; keep it off the filesystem
os.environ.setdefault("LOG_FILE", "")
