# criptocracia/__init__.py

# Voter core for Criptocracia: anonymous vote authorization through RSA blind
# signatures over a Nostr relay, plus election and results synchronization.

import logging

__version__ = "0.3.7"

logging.getLogger(__name__).addHandler(logging.NullHandler())
