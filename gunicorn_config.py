"""
Gunicorn settings for TourMatrix.

Schema setup happens when each worker imports app.py. Once the arbiter is
listening, when_ready() smoke-tests the JSON API from a daemon thread so a bad
deploy shows up in the logs (and the optional webhook) without blocking boot.
"""

import logging
import os
import threading
import time

PORT = os.environ.get("PORT", "8000")

bind = f"0.0.0.0:{PORT}"
workers = int(os.environ.get("WEB_CONCURRENCY", "2"))
# Distance batches fan out to the routing API; give them room to finish.
timeout = int(os.environ.get("GUNICORN_TIMEOUT", "120"))

# Workers fork after when_ready fires; wait before hitting them.
SMOKE_TEST_DELAY = float(os.environ.get("SMOKE_TEST_DELAY", "2"))


def _smoke_check(base_url):
    log = logging.getLogger("gunicorn.error")
    time.sleep(SMOKE_TEST_DELAY)
    from smoke_test import run_tests

    log.info("[deploy-check] probing %s", base_url)
    try:
        passed = run_tests(base_url)
    except Exception:
        log.exception("[deploy-check] aborted with an exception")
        return
    if passed:
        log.info("[deploy-check] all endpoints healthy")
    else:
        log.error("[deploy-check] one or more endpoints failed")


def when_ready(server):
    threading.Thread(
        target=_smoke_check,
        args=(f"http://127.0.0.1:{PORT}",),
        name="deploy-check",
        daemon=True,
    ).start()
