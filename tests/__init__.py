"""
VPN Guard Test Suite

Containment tests that MUST pass before any release.

Priority:
1. Monitor state machine (pause/rebind/resume transitions)
2. Start guard and boot ordering (fail-closed)
3. Bind address enforcement and client control
4. Install-time helpers
"""

import logging

# Configure test logging
logging.basicConfig(
    level=logging.DEBUG,
    format='%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'
)
