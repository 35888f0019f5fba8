import os

# Run with: uvicorn main:app --host $HOST --port $PORT --workers $UVICORN_WORKERS
host = os.getenv("HOST", "0.0.0.0")
port = int(os.getenv("PORT", "9001"))
# counter state lives in the database, so replicas and workers scale freely
workers = int(os.getenv("UVICORN_WORKERS", str(max(2, (os.cpu_count() or 1)))))
loop = "uvloop"  # requires uvicorn[standard]
http = "h11"
log_level = os.getenv("LOG_LEVEL", "info")
