"""
Gunicorn configuration for the Deadman API server.

Env vars that override defaults:
  PORT     — TCP port to bind
  WORKERS  — number of worker processes (default: 1)

Every worker runs the app lifespan, and with it its own inactivity scanner.
Keep WORKERS at 1 unless SCANNER_ENABLED=false is set for all but one
deployment, or sweeps will run once per worker.
"""
import os

bind = f"0.0.0.0:{os.environ.get('PORT', '8000')}"

workers = int(os.environ.get("WORKERS", "1"))

# Uvicorn's ASGI event loop inside Gunicorn's process manager; the scanner
# schedules its sweeps on that loop.
worker_class = "uvicorn.workers.UvicornWorker"

keepalive = 5

timeout = 120

# stdout only; application logs go through structlog on the same stream.
loglevel = os.environ.get("LOG_LEVEL", "info").lower()
accesslog = "-"
errorlog = "-"
access_log_format = '%(h)s "%(r)s" %(s)s %(b)sB %(D)sµs'

# Longer than the shutdown wait for an in-flight sweep.
graceful_timeout = 45
