"""AWS Lambda entry point.

Mangum translates API Gateway HTTP API (v2) events into ASGI,
letting the existing FastAPI app run unchanged on Lambda.

Lifespan is off, so the periodic telemetry flush never starts there;
metrics still go out when a batch fills and errors go out immediately.
The limiters are built by the first request a container serves and live
as long as the container; their sweep threads are daemons.
"""

from mangum import Mangum

from ratekeeper.main import app

handler = Mangum(app, lifespan="off")
