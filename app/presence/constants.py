MAX_UPLOAD_BYTES = 100 * 1024 * 1024   # 100 MB (video files are larger than audio)
MAX_REQUEST_BYTES = 110 * 1024 * 1024
CHUNK_SIZE = 1024 * 1024
MAX_ERROR_CHARS = 1200
POLL_INTERVAL_SECONDS = 3
UNSET = object()
