"""refdata-bridge: natural-key based synchronization of reference data between record stores."""

import logging

__version__ = "0.1.0"

# httpx and httpcore log every connection at INFO/DEBUG, which would drown
# the migration log; our own client logs each request instead.
for _noisy in ("httpx", "httpcore"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
