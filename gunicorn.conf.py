"""
Gunicorn configuration for the diarybot webhook server.

Env vars that override defaults:
  PORT     — TCP port to bind (Railway sets this automatically)
  WORKERS  — number of worker processes (default: 2)

Each worker holds its own circuit breakers, summary registry and
performance buffer; /performance numbers are per worker.
"""
import os

wsgi_app = "diarybot.main:app"

bind = f"0.0.0.0:{os.environ.get('PORT', '8000')}"

workers = int(os.environ.get("WORKERS", "2"))

# ASGI event loop inside Gunicorn's process manager; background
# enrichment passes run on this loop after the response is sent.
worker_class = "uvicorn.workers.UvicornWorker"

keepalive = 5

# LINE expects the webhook answer within seconds; enrichment runs after it.
timeout = 60

loglevel = os.environ.get("LOG_LEVEL", "info").lower()
accesslog = "-"
errorlog = "-"
access_log_format = '%(h)s "%(r)s" %(s)s %(b)sB %(D)sµs'

# Let in-flight enrichment passes finish on restart.
graceful_timeout = 30
