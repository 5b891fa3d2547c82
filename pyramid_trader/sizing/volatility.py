"""
Volatility estimate for adaptive leverage.

Keeps a bounded window of price samples per symbol and reports the standard
deviation of log returns. Returns the default estimate until enough samples
exist.
"""

from collections import deque
from typing import Deque, Dict

import numpy as np


class VolatilityEstimator:
    """Rolling log-return volatility per symbol."""

    def __init__(self, window: int = 60, min_samples: int = 10, default_estimate: float = 0.02):
        self._window = window
        self._min_samples = min_samples
        self._default = default_estimate
        self._samples: Dict[str, Deque[float]] = {}

    def record(self, symbol: str, price: float):
        if price <= 0:
            return
        if symbol not in self._samples:
            self._samples[symbol] = deque(maxlen=self._window)
        self._samples[symbol].append(price)

    def sample_count(self, symbol: str) -> int:
        return len(self._samples.get(symbol, ()))

    def estimate(self, symbol: str) -> float:
        samples = self._samples.get(symbol)
        if samples is None or len(samples) < self._min_samples:
            return self._default
        prices = np.asarray(samples, dtype=float)
        returns = np.diff(np.log(prices))
        return float(np.std(returns))
