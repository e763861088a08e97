import argparse
import logging

import numpy as np
from scipy.special import betaln

from DPMM import GibbsDriver

logger = logging.getLogger(__name__)


def generate(num_items, num_clusters, num_features, beta, rng=None):
    """Binary feature vectors from num_clusters equal-sized clusters.

    Each cluster draws its own Bernoulli rate per feature from Beta(beta, beta).
    Returns the data as an (num_items, num_features) array and the true
    cluster of every item.
    """
    rng = np.random.default_rng(rng)
    items = np.arange(num_items)

    split_items = np.array_split(items, num_clusters)

    true_z = np.empty(num_items, dtype=int)
    for idx, cluster in enumerate(split_items):
        true_z[cluster] = idx

    eta = rng.beta(beta, beta, size=(num_clusters, num_features))

    data = (rng.random((num_items, num_features)) < eta[true_z]).astype(int)
    return data, true_z


def beta_bernoulli_log_marginal(a=1.0, b=1.0):
    """Likelihood of a set of binary vectors with per-feature Beta(a, b) rates.

    L(X) = Σ_d log Beta(a + k_d, b + n - k_d) - log Beta(a, b)
    """
    def log_marginal(values):
        values = np.asarray(values)
        if values.size == 0:
            return 0.0
        n = values.shape[0]
        k = values.sum(axis=0)
        return float(np.sum(betaln(a + k, b + n - k) - betaln(a, b)))
    return log_marginal


def main(argv=None):
    parser = argparse.ArgumentParser(prog="synthetic_DPMM",
                                     description="Cluster synthetic binary data with a DPMM Gibbs sampler")
    parser.add_argument("--num-items", type=int, default=60)
    parser.add_argument("--num-clusters", type=int, default=3)
    parser.add_argument("--num-features", type=int, default=20)
    parser.add_argument("--alpha", type=float, default=1.0, help="CRP concentration")
    parser.add_argument("--beta", type=float, default=0.5, help="Beta prior on feature rates")
    parser.add_argument("--steps", type=int, default=5000, help="number of Gibbs moves")
    parser.add_argument("--interval", type=int, default=100, help="steps between history rows")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--verbose", "-v", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s %(name)s %(levelname)s %(message)s")

    rng = np.random.default_rng(args.seed)
    data, true_z = generate(args.num_items, args.num_clusters, args.num_features, args.beta, rng)

    driver = GibbsDriver(list(data), beta_bernoulli_log_marginal(args.beta, args.beta), args.alpha,
                         rng=rng, history_interval=args.interval, progress=True)
    driver.initialize()

    def log_row(row):
        logger.info("step %d: %d clusters, log-likelihood %.4f", *row)

    driver.run(args.steps, sink=log_row)

    logger.info("true clusters: %d, sampled clusters: %d, best log joint: %.4f",
                len(set(true_z)), driver.cluster_count(), driver.max_log_joint)
    return driver


if __name__ == "__main__":
    main()
