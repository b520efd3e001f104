import logging
import os

logger = logging.getLogger(__name__)


def _canon_prefix(val):
    """
    Normalize API prefix to always be exactly like '/api':
      - defaults to '/api' when unset/empty
      - ensures a single leading slash
      - removes any trailing slash (except for root)
    """
    val = (val or "/api").strip()
    if not val.startswith("/"):
        val = "/" + val
    if len(val) > 1 and val.endswith("/"):
        val = val[:-1]
    return val


def _parse_int(env_var: str, default: int, *, minimum: int = 0) -> int:
    raw_value = os.getenv(env_var)
    if raw_value is None or not raw_value.strip():
        return default

    try:
        value = int(raw_value)
    except ValueError:
        logger.warning(
            "%s is not a valid integer (got %r); defaulting to %d",
            env_var,
            raw_value,
            default,
        )
        return default

    if value < minimum:
        logger.warning(
            "%s must be >= %d (got %d); defaulting to %d",
            env_var,
            minimum,
            value,
            default,
        )
        return default

    return value


def _parse_bool(env_var: str, default: bool) -> bool:
    raw_value = os.getenv(env_var)
    if raw_value is None or not raw_value.strip():
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}


API_PREFIX = _canon_prefix(os.getenv("API_PREFIX"))

# Matches a player needs in a bucket before it shows on leaderboards.
REQUIRED_MATCHES = _parse_int("REQUIRED_MATCHES", 5, minimum=1)

# Same-millisecond groups at or above this size are bulk-insert candidates
# even when every record has different participants.
AUDIT_BULK_CLUSTER_SIZE = _parse_int("AUDIT_BULK_CLUSTER_SIZE", 10, minimum=2)
AUDIT_SAME_PAIR_CLUSTER_SIZE = _parse_int(
    "AUDIT_SAME_PAIR_CLUSTER_SIZE", 2, minimum=2
)

CLEANUP_STRICT = _parse_bool("CLEANUP_STRICT", False)
AUTO_VALIDATE_MATCHES = _parse_bool("AUTO_VALIDATE_MATCHES", True)
RECONCILIATION_PLAN_TTL_SECONDS = _parse_int(
    "RECONCILIATION_PLAN_TTL_SECONDS", 3600, minimum=1
)
