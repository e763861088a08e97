import numpy as np


class WeightedSampler(object):
    """Draw one label from a finite set with probability proportional to weight.

    All randomness comes from the numpy Generator held by the sampler, so a
    seeded sampler reproduces the same sequence of draws.
    """
    def __init__(self, rng=None):
        self.rng = np.random.default_rng(rng)

    def choice(self, labels, weights):
        """Sample a label; weights need not be normalized."""
        labels = list(labels)
        weights = np.asarray(weights, dtype=float)

        if len(labels) != len(weights):
            raise ValueError("labels and weights have different lengths (%d != %d)"
                             % (len(labels), len(weights)))
        if len(labels) == 0:
            raise ValueError("cannot sample from an empty set of labels")
        if not np.all(np.isfinite(weights)) or np.any(weights < 0):
            raise ValueError("weights must be finite and non-negative")

        total = weights.sum()
        if total <= 0:
            raise ValueError("weights sum to zero")

        idx = self.rng.choice(len(labels), p = weights / total)
        return labels[idx]

    def uniform(self, labels):
        """Sample a label with equal weights."""
        labels = list(labels)
        return self.choice(labels, np.ones(len(labels)))
