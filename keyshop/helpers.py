import time
import hmac
from typing import Iterable, List


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def clean_key_values(values: Iterable[str]) -> List[str]:
    # strip surrounding whitespace; blanks are reported by the caller
    return [(v or "").strip() for v in values]
