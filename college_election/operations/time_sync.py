# college_election/operations/time_sync.py
# Clock drift check against NTP servers. Voting windows are evaluated against
# the server clock, so drift is reported by the health endpoint.

import ntplib
from datetime import datetime, timezone
from typing import Dict, List
import logging

logger = logging.getLogger(__name__)

# A few reliable NTP servers (you can modify or expand this list)
NTP_SERVERS = [
    "pool.ntp.org",
    "time.google.com",
    "time.windows.com",
    "time.apple.com"
]

# Maximum acceptable time offset in seconds (as per policy)
MAX_ALLOWED_OFFSET = 0.5


def check_time_sync(servers: List[str] = None, max_offset: float = MAX_ALLOWED_OFFSET) -> Dict:
    """
    Check time offset from multiple NTP servers.
    Returns:
        A dictionary containing offsets, average drift, and overall health.
    """
    results: List[Dict] = []
    total_offset = 0
    valid_servers = 0

    client = ntplib.NTPClient()
    for server in servers or NTP_SERVERS:
        try:
            response = client.request(server, version=3, timeout=2)
            offset = response.offset
            total_offset += offset
            valid_servers += 1
            results.append({
                "server": server,
                "offset_s": round(offset, 6),
                "time": datetime.fromtimestamp(response.tx_time, tz=timezone.utc).isoformat(),
                "status": "ok" if abs(offset) <= max_offset else "drifted"
            })
        except (ntplib.NTPException, OSError) as e:
            logger.warning("NTP query to %s failed: %s", server, e)
            results.append({
                "server": server,
                "error": str(e),
                "status": "failed"
            })

    avg_offset = round(total_offset / valid_servers, 6) if valid_servers else None
    overall_ok = avg_offset is not None and abs(avg_offset) <= max_offset

    return {
        "overall_ok": overall_ok,
        "average_offset_s": avg_offset,
        "max_allowed_offset_s": max_offset,
        "results": results
    }
