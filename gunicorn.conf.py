import multiprocessing
import os

bind = os.getenv("GUNICORN_BIND", "0.0.0.0:8000")
worker_class = "uvicorn.workers.UvicornWorker"
workers = int(os.getenv("GUNICORN_WORKERS", multiprocessing.cpu_count() + 1))
# A /continue call can spend minutes inside one batch when Graph throttles
timeout = int(os.getenv("GUNICORN_TIMEOUT", "300"))
graceful_timeout = int(os.getenv("GUNICORN_GRACEFUL_TIMEOUT", "60"))
keepalive = int(os.getenv("GUNICORN_KEEPALIVE", "5"))
max_requests = int(os.getenv("GUNICORN_MAX_REQUESTS", "500"))
max_requests_jitter = int(os.getenv("GUNICORN_MAX_REQUESTS_JITTER", "50"))
loglevel = os.getenv("GUNICORN_LOG_LEVEL", "info")
accesslog = "-"
errorlog = "-"
forwarded_allow_ips = "*"

capture_output = True
worker_tmp_dir = "/dev/shm"


def on_starting(server):
    # Workers each start the lifespan; only one scheduler should advance crawls
    if os.getenv("SCHEDULER_ENABLED", "false").lower() == "true" and workers > 1:
        server.log.warning("SCHEDULER_ENABLED with %s workers: every worker runs the crawl job", workers)


def worker_exit(server, worker):
    server.log.info("Worker exiting", extra={"pid": worker.pid})
