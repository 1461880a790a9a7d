"""
Gunicorn config. The worker timeout sits above the analysis deadline so
a slow request gets AnalysisTimeout (and a JSON 500) instead of the
worker being killed mid-response.
"""

import logging
import os

bind = f"0.0.0.0:{os.environ.get('PORT', '8000')}"
workers = int(os.environ.get("WEB_CONCURRENCY", "2"))
# Analysis stages run in a thread pool; one request per worker thread.
threads = int(os.environ.get("GUNICORN_THREADS", "4"))

_deadline = float(os.environ.get("ANALYSIS_DEADLINE_SECONDS", "45"))
timeout = int(_deadline) + 30
graceful_timeout = 30


def when_ready(server):
    logging.getLogger("gunicorn.error").info(
        "HomeAccess ready (analysis deadline %.0fs, worker timeout %ds)", _deadline, timeout,
    )
