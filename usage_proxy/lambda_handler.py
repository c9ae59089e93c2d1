"""AWS Lambda entry point.

Mangum translates API Gateway HTTP API (v2) events into ASGI,
letting the existing FastAPI app run unchanged on Lambda.

Lifespan is off, so the background cache sweeper never starts here; the
config cache sweeps itself lazily on access instead. Keep
ASYNC_STATS_UPLOAD disabled on Lambda.
"""

from mangum import Mangum

from usage_proxy.logging.audit import setup_logging
from usage_proxy.main import app

setup_logging()

handler = Mangum(app, lifespan="off")
