import logging
from collections import namedtuple
from enum import Enum

import numpy as np
from scipy.special import gammaln, logsumexp
from sortedcontainers import SortedSet
from tqdm import tqdm

from sampling import WeightedSampler

logger = logging.getLogger(__name__)

# id of the always-empty placeholder that stands for "start a new cluster"
NULL_BLOCK = 0

HistoryRow = namedtuple("HistoryRow", ["step", "cluster_count", "total_log_likelihood"])


class State(Enum):
    UNINITIALIZED = 0
    RUNNING = 1


class DPMMError(Exception):
    """Base class for sampler errors."""


class InvalidReference(DPMMError):
    """An item was routed to a block id that is not open."""
    def __init__(self, block_id):
        super().__init__("block %r is not open" % (block_id,))
        self.block_id = block_id


class DegenerateDistribution(DPMMError):
    """The posterior weights of a Gibbs move cannot be normalized."""
    def __init__(self, item, block_ids, log_weights):
        super().__init__("degenerate posterior for item %d over blocks %s (log weights %s)"
                         % (item, list(block_ids), list(log_weights)))
        self.item = item
        self.block_ids = list(block_ids)
        self.log_weights = list(log_weights)


def crp_log_prior(sizes, alpha):
    """log p(z) under the CRP.

    p(z) = α^K Π_k (n_k - 1)! / (α)(α+1)...(α+N-1)
    """
    sizes = np.asarray(list(sizes), dtype=float)
    n = sizes.sum()
    return float(len(sizes) * np.log(alpha) + np.sum(gammaln(sizes))
                 + gammaln(alpha) - gammaln(alpha + n))


def ewens_cluster_count_pmf(n, alpha):
    """p(K = k) for k = 0..n under the CRP with n customers.

    p(K = k) = |s(n,k)| α^k / (α)(α+1)...(α+n-1), where |s(n,k)| are the
    unsigned Stirling numbers of the first kind, built in log space with
    |s(m+1,k)| = m |s(m,k)| + |s(m,k-1)|.
    """
    log_s = np.full(n + 1, -np.inf)
    log_s[0] = 0.0
    with np.errstate(divide="ignore", invalid="ignore"):
        for m in range(n):
            new = np.full(n + 1, -np.inf)
            new[1:] = np.logaddexp(np.log(m) + log_s[1:], log_s[:-1])
            log_s = new
    log_p = log_s + np.arange(n + 1) * np.log(alpha) - (gammaln(alpha + n) - gammaln(alpha))
    return np.exp(log_p)


class PartitionStore(object):
    """Partition of items into blocks with cached block log-likelihoods.

    Blocks live in an arena of N+1 slots. Slot 0 is the null block, which is
    never populated: adding an item to it opens a concrete block with the
    smallest free id instead. The sum of the cached block log-likelihoods is
    kept in step with every membership change.
    """
    def __init__(self, items, log_likelihood):
        self.items = list(items)
        self.num_items = len(self.items)

        # L(values) for a non-empty list of item values
        self.log_likelihood = log_likelihood

        # members of each open block, None for closed slots
        self.blocks = [None] * (self.num_items + 1)
        self.block_ll = [0.0] * (self.num_items + 1)

        # open concrete blocks and the pool of free ids
        self.block_ids = SortedSet()
        self.free_ids = SortedSet(range(1, self.num_items + 1))

        # block id of each item, None while unassigned
        self.z = {}

        self.total_ll = 0.0
        self.num_assigned = 0

    def _ll(self, members):
        if not members:
            return 0.0
        return float(self.log_likelihood([self.items[i] for i in sorted(members)]))

    def _open_block(self):
        block_id = self.free_ids.pop(0)
        self.blocks[block_id] = set()
        self.block_ll[block_id] = 0.0
        self.block_ids.add(block_id)
        logger.debug("opened block %d", block_id)
        return block_id

    def _close_block(self, block_id):
        self.blocks[block_id] = None
        self.block_ll[block_id] = 0.0
        self.block_ids.remove(block_id)
        self.free_ids.add(block_id)
        logger.debug("closed block %d", block_id)

    def remove(self, item):
        """Deassign item from its block.

        Returns False if the item is not assigned. A block left empty is
        closed and its id returned to the pool.
        """
        block_id = self.z.get(item)
        if block_id is None:
            return False

        block = self.blocks[block_id]
        self.total_ll -= self.block_ll[block_id]
        block.remove(item)
        self.z[item] = None
        self.num_assigned -= 1

        if not block:
            self._close_block(block_id)
        else:
            self.block_ll[block_id] = self._ll(block)
            self.total_ll += self.block_ll[block_id]
        return True

    def add(self, item, block_id):
        """Assign item to block_id, opening a new block for the null block."""
        if block_id != NULL_BLOCK and block_id not in self.block_ids:
            raise InvalidReference(block_id)
        if not 0 <= item < self.num_items:
            raise IndexError("item %r out of range for %d items" % (item, self.num_items))
        if self.z.get(item) is not None:
            raise ValueError("item %d is already assigned to block %d" % (item, self.z[item]))

        if block_id == NULL_BLOCK:
            block_id = self._open_block()

        block = self.blocks[block_id]
        self.total_ll -= self.block_ll[block_id]
        block.add(item)
        self.block_ll[block_id] = self._ll(block)
        self.total_ll += self.block_ll[block_id]

        self.z[item] = block_id
        self.num_assigned += 1
        return True

    def open_blocks(self):
        """Candidate block ids: the null block, then open blocks in id order."""
        return [NULL_BLOCK] + list(self.block_ids)

    def total_log_likelihood(self):
        return self.total_ll

    def working_count(self):
        return self.num_assigned

    def cluster_count(self):
        return len(self.block_ids)

    def is_open(self, block_id):
        return block_id == NULL_BLOCK or block_id in self.block_ids

    def members(self, block_id):
        if block_id == NULL_BLOCK:
            return frozenset()
        if block_id not in self.block_ids:
            raise InvalidReference(block_id)
        return frozenset(self.blocks[block_id])

    def size(self, block_id):
        if block_id == NULL_BLOCK:
            return 0
        if block_id not in self.block_ids:
            raise InvalidReference(block_id)
        return len(self.blocks[block_id])

    def sizes(self):
        return [len(self.blocks[b]) for b in self.block_ids]

    def block_log_likelihood(self, block_id):
        if block_id == NULL_BLOCK:
            return 0.0
        if block_id not in self.block_ids:
            raise InvalidReference(block_id)
        return self.block_ll[block_id]

    def block_of(self, item):
        return self.z.get(item)

    def log_likelihood_with(self, item, block_id):
        """L(block ∪ {item}) without changing the partition."""
        return self._ll(self.members(block_id) | {item})

    def recompute_total_log_likelihood(self):
        """Sum of L(block) over open blocks, evaluated from scratch."""
        return sum(self._ll(self.blocks[b]) for b in self.block_ids)

    def get_z(self):
        return dict(self.z)

    def partition(self):
        return [frozenset(self.blocks[b]) for b in self.block_ids]


class GibbsDriver(object):
    """Collapsed Gibbs sampler for a Dirichlet Process Mixture Model.

    Each move picks an item uniformly at random, removes it from its block
    and reseats it with probability

        p(z_i = b | z_-i, x) ∝ n_b / (α + n) * exp(L(x_b ∪ x_i) - L(x_b))
        p(z_i = new | z_-i, x) ∝ α / (α + n) * exp(L({x_i}))

    where n counts the items currently assigned, excluding x_i.
    """
    def __init__(self, items, log_likelihood, alpha, rng=None, sampler=None,
                 history_interval=10, progress=False):
        if not alpha > 0:
            raise ValueError("alpha must be > 0")
        if history_interval < 1:
            raise ValueError("history_interval must be >= 1")

        # CRP concentration
        self.alpha = alpha

        self.store = PartitionStore(items, log_likelihood)
        self.num_items = self.store.num_items

        if sampler is None:
            sampler = WeightedSampler(rng)
        self.sampler = sampler

        self.history_interval = history_interval
        self.progress = progress

        self.state = State.UNINITIALIZED
        self.iteration = 0

        # best joint seen so far, as a measure of the MAP partition
        self.max_log_joint = -np.inf
        self.best_z = {}

    def posterior(self, item):
        """p(z[item] = b | z[-item], x) for every open block b.

        The item must be unassigned. Returns the candidate block ids and
        their normalized probabilities.
        """
        if self.store.block_of(item) is not None:
            raise ValueError("item %d must be removed before computing its posterior" % item)

        block_ids = self.store.open_blocks()
        log_denom = np.log(self.alpha + self.store.working_count())

        log_weights = np.empty(len(block_ids))
        with np.errstate(divide="ignore", invalid="ignore"):
            for i, block_id in enumerate(block_ids):
                if block_id == NULL_BLOCK:
                    log_prior = np.log(self.alpha)
                else:
                    log_prior = np.log(self.store.size(block_id))
                log_lik = (self.store.log_likelihood_with(item, block_id)
                           - self.store.block_log_likelihood(block_id))
                log_weights[i] = log_prior - log_denom + log_lik

        if (np.any(np.isnan(log_weights)) or np.any(log_weights == np.inf)
                or np.all(log_weights == -np.inf)):
            raise DegenerateDistribution(item, block_ids, log_weights)

        probs = np.exp(log_weights - logsumexp(log_weights))
        return block_ids, probs

    def _reseat(self, item):
        source = self.store.block_of(item)
        self.store.remove(item)
        try:
            block_ids, probs = self.posterior(item)
            block_id = self.sampler.choice(block_ids, probs)
        except (DPMMError, ValueError):
            # put the item back so no step leaves it unassigned
            if source is not None:
                if not self.store.is_open(source):
                    source = NULL_BLOCK
                self.store.add(item, source)
            raise
        self.store.add(item, block_id)

    def _track_best(self):
        joint = self.log_joint()
        if joint > self.max_log_joint:
            self.max_log_joint = joint
            self.best_z = self.store.get_z()

    def initialize(self, order=None):
        """Seat every item in turn, in index order unless order is given.

        Items that are already assigned are removed first, so calling this
        again reseats the whole partition.
        """
        if order is None:
            order = range(self.num_items)
        order = list(order)
        if sorted(order) != list(range(self.num_items)):
            raise ValueError("order must be a permutation of 0..%d" % (self.num_items - 1))

        for item in order:
            self._reseat(item)

        self.state = State.RUNNING
        self.max_log_joint = self.log_joint()
        self.best_z = self.store.get_z()
        logger.info("initialized %d items into %d clusters (log-likelihood %.4f)",
                    self.num_items, self.cluster_count(), self.total_log_likelihood())

    def step(self):
        """A single Gibbs move on a uniformly chosen item."""
        if self.state is not State.RUNNING:
            raise RuntimeError("initialize() must be called before sampling")

        item = self.sampler.uniform(range(self.num_items))
        self._reseat(item)
        self.iteration += 1
        self._track_best()
        return item

    def run(self, steps, sink=None, stop=None):
        """Run steps Gibbs moves.

        Every history_interval moves a HistoryRow is recorded and handed to
        sink. stop is polled between moves; a true result ends the run early.
        """
        if self.state is not State.RUNNING:
            raise RuntimeError("initialize() must be called before sampling")

        history = []
        for _ in tqdm(range(steps), disable = not self.progress):
            if stop is not None and stop():
                logger.info("run stopped at step %d", self.iteration)
                break

            self.step()

            if self.iteration % self.history_interval == 0:
                row = HistoryRow(self.iteration, self.cluster_count(), self.total_log_likelihood())
                history.append(row)
                if sink is not None:
                    sink(row)

        logger.info("step %d: %d clusters, log-likelihood %.4f",
                    self.iteration, self.cluster_count(), self.total_log_likelihood())
        return history

    def cluster_count(self):
        return self.store.cluster_count()

    def total_log_likelihood(self):
        return self.store.total_log_likelihood()

    def log_joint(self):
        """log p(z, x) = log p(z) + Σ_b L(x_b)"""
        return crp_log_prior(self.store.sizes(), self.alpha) + self.store.total_log_likelihood()

    def get_z(self):
        return self.store.get_z()

    def partition(self):
        return self.store.partition()
