import os

# Gunicorn config variables
wsgi_app = "watchtogether.main:app"
bind = os.getenv("BIND", "127.0.0.1:8000")
# The realtime hub lives in process memory: every client of a room must hit the same worker.
workers = 1
worker_class = "uvicorn.workers.UvicornWorker"
timeout = 120
keepalive = 5
max_requests = 0  # recycling a worker drops every live room connection
accesslog = os.getenv("ACCESS_LOG", "/var/log/skillforge-watch/access.log")
errorlog = os.getenv("ERROR_LOG", "/var/log/skillforge-watch/error.log")
loglevel = "info"
daemon = False
