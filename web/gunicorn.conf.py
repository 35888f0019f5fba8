import os


def cpu():
    return max(1, (os.cpu_count() or 1))


bind = os.getenv("GUNI_BIND", "0.0.0.0:8000")
wsgi_app = "storefront.wsgi:application"

# Workers: request handling is stateless; order state lives in the database
workers = int(os.getenv("GUNI_WORKERS", str(min(max(2, cpu() * 2), 8))))

# Threads per worker: checkout blocks on the inventory service and the gateway
worker_class = "gthread"
threads = int(os.getenv("GTHREADS", "4"))

# Gateway calls are bounded by HTTP_TIMEOUT_SECS x HTTP_RETRY_MAX, well below this
timeout = int(os.getenv("GUNI_TIMEOUT", "60"))
graceful_timeout = int(os.getenv("GUNI_GRACEFUL_TIMEOUT", "30"))
keepalive = int(os.getenv("GUNI_KEEPALIVE", "5"))

preload_app = True
max_requests = int(os.getenv("GUNI_MAX_REQUESTS", "2000"))
max_requests_jitter = int(os.getenv("GUNI_MAX_REQUESTS_JITTER", "200"))

# Application logs are JSON (settings.LOGGING); access log stays plain
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("GUNI_LOGLEVEL", "info")
