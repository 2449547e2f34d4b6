"""
Gunicorn configuration for the Trade Settlement Engine
Run with: gunicorn -c gunicorn_conf.py webhook_server:app
"""
import os

# Server socket
bind = f"0.0.0.0:{os.getenv('PORT', '5000')}"
backlog = 2048

# Worker processes
# Each worker owns its own engine pool; keep workers * DATABASE_POOL_SIZE under the server's connection limit
workers = int(os.getenv("WEB_CONCURRENCY", "4"))
worker_class = "uvicorn.workers.UvicornWorker"
max_requests = 10000
max_requests_jitter = 1000
timeout = 60
graceful_timeout = 30
keepalive = 30

# Logging
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info")
access_log_format = '%(h)s "%(r)s" %(s)s %(b)s %(D)s'

proc_name = "trade_settlement_engine"

# Fork after import so no pooled connection is shared between workers
preload_app = False


def when_ready(server):
    server.log.info(f"✅ Trade Settlement Engine ready with {workers} uvicorn workers on {bind}")


def post_fork(server, worker):
    server.log.info(f"🔧 Worker {worker.pid} started")


def worker_abort(worker):
    worker.log.warning(f"❌ Worker {worker.pid} aborted (request exceeded {timeout}s)")


def worker_exit(server, worker):
    server.log.info(f"👋 Worker {worker.pid} exited")
