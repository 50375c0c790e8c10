"""
Phone number normalization.

Turns user-supplied phone numbers into the transport's routing address
(``<digits><suffix>``). Results are memoized in a bounded, insertion-ordered
cache so repeated sends to the same number skip the regex work.
"""

import re
from collections import OrderedDict
from typing import Dict


NON_DIGITS = re.compile(r"[^\d]")
LEADING_ZEROS = re.compile(r"^0+")

# Numbers with at most this many digits and no "+" or "00" prefix are local.
LOCAL_NUMBER_MAX_DIGITS = 10


class PhoneNumberNormalizer:
    """
    Normalizes raw phone numbers into routing addresses.

    The transformation is pure; the only shared state is the memo cache,
    which is bounded to ``max_cache_size`` entries and evicts the oldest.
    """

    def __init__(
        self,
        default_country_code: str = "91",
        routing_suffix: str = "@c.us",
        max_cache_size: int = 1000,
    ):
        if not default_country_code.isdigit():
            raise ValueError("default_country_code must contain digits only")
        if max_cache_size < 1:
            raise ValueError(f"max_cache_size must be >= 1, got {max_cache_size}")

        self.default_country_code = default_country_code
        self.routing_suffix = routing_suffix
        self.max_cache_size = max_cache_size
        self._cache: "OrderedDict[str, str]" = OrderedDict()

    def normalize(self, raw: str) -> str:
        """
        Return the routing address for ``raw``, using the memo cache.

        Raises:
            ValueError: If the input contains no digits.
        """
        cached = self._cache.get(raw)
        if cached is not None:
            return cached

        formatted = self.format(raw)

        if len(self._cache) >= self.max_cache_size:
            self._cache.popitem(last=False)
        self._cache[raw] = formatted
        return formatted

    def format(self, raw: str) -> str:
        """Uncached normalization."""
        if not isinstance(raw, str) or not raw.strip():
            raise ValueError("Phone number must be a non-empty string")

        raw = raw.strip()
        # Already a routing address
        if raw.endswith(self.routing_suffix):
            user_part = raw[: -len(self.routing_suffix)]
            if user_part.isdigit():
                return raw

        cleaned = NON_DIGITS.sub("", raw)
        if not cleaned:
            raise ValueError(f"Phone number contains no digits: {raw!r}")

        if raw.startswith("+"):
            qualified = True
        elif cleaned.startswith("00"):
            cleaned = cleaned[2:]
            qualified = True
        else:
            # drop a trunk prefix such as 0 before judging the length
            cleaned = LEADING_ZEROS.sub("", cleaned)
            if not cleaned:
                raise ValueError(f"Phone number contains no significant digits: {raw!r}")
            qualified = len(cleaned) > LOCAL_NUMBER_MAX_DIGITS

        if not qualified:
            cleaned = self.default_country_code + cleaned

        cleaned = LEADING_ZEROS.sub("", cleaned)
        return cleaned + self.routing_suffix

    def cache_info(self) -> Dict[str, int]:
        return {"size": len(self._cache), "max_size": self.max_cache_size}

    def clear(self) -> None:
        self._cache.clear()
