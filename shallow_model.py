"""shallow_model — fastText-style shallow embedding core in pure Python.

Implements the per-example training step and top-k ranking of a shallow
embedding model with:
- Mean-of-rows hidden vector over a bag of input ids
- Negative sampling from a smoothed (sqrt) unigram table
- Hierarchical softmax over a Huffman tree
- Full softmax with max-subtraction
- Online SGD on both weight tables (lock-free, Hogwild-friendly)

Objectives (``Args.loss``)::

    ns       Negative sampling    — target vs ``neg`` sampled classes
    hs       Hierarchical softmax — one binary classifier per tree level
    softmax  Full softmax         — every class, every step

::

    model = Model.create(n_in=1000, n_out=4, args=Args(loss="hs", dim=10))
    model.configure([1, 1, 2, 4])             # class counts, ascending
    model.update([3, 17, 42], 2)              # → loss
    model.predict([3, 17], k=2)               # → [(score, class_id), ...]

Requires only **numpy** and **numba** (no scipy, no BLAS from numba).

The weight tables are plain numpy arrays owned by the caller. Several
``Model`` instances may wrap the same tables (one per worker thread); the
kernels are compiled ``nogil`` and update rows without locking.
"""

from __future__ import annotations

import heapq
import sys
import time
from dataclasses import dataclass

import numpy as np
from numba import njit


MIN_LR = 1e-6
NEGATIVE_TABLE_SIZE = 10_000_000

_LOG_FLOOR = 1e-5

_LOSS_NS = 0
_LOSS_HS = 1
_LOSS_SOFTMAX = 2
_LOSS_KINDS = {"ns": _LOSS_NS, "hs": _LOSS_HS, "softmax": _LOSS_SOFTMAX}
_MODELS = ("sup", "cbow", "sg")

# placeholders passed to the kernels when an objective has no tree/table
_NO_NEGATIVES = np.empty(0, dtype=np.int32)
_NO_OFFSETS = np.zeros(1, dtype=np.int64)
_NO_NODES = np.empty(0, dtype=np.int32)
_NO_CODES = np.empty(0, dtype=np.bool_)


# ── numeric helpers ──────────────────────────────────────────────────────────


@njit(cache=True, nogil=True)
def _sigmoid(x):
    if x >= 0.0:
        return 1.0 / (1.0 + np.exp(-x))
    e = np.exp(x)
    return e / (1.0 + e)


@njit(cache=True, nogil=True)
def _log(x):
    """Natural log floored at 1e-5, so losses stay finite and >= 0."""
    return np.log(max(x, _LOG_FLOOR))


@njit(cache=True, nogil=True)
def _softmax_inplace(output):
    mx = output[0]
    for i in range(len(output)):
        if output[i] > mx:
            mx = output[i]
    z = 0.0
    for i in range(len(output)):
        output[i] = np.exp(output[i] - mx)
        z += output[i]
    for i in range(len(output)):
        output[i] /= z


@njit(fastmath=True, cache=True, nogil=True)
def _compute_hidden(wi, input_ids):
    """Mean of the selected input rows (float64 scratch)."""
    dim = wi.shape[1]
    hidden = np.zeros(dim, np.float64)
    for k in range(len(input_ids)):
        row = input_ids[k]
        for d in range(dim):
            hidden[d] += wi[row, d]
    inv = 1.0 / len(input_ids)
    for d in range(dim):
        hidden[d] *= inv
    return hidden


def softmax(scores) -> np.ndarray:
    """Numerically stable softmax of a 1-D score vector (returns a copy)."""
    out = np.array(scores, dtype=np.float64)
    if out.ndim != 1 or len(out) == 0:
        raise ValueError("scores must be a non-empty 1-D vector")
    _softmax_inplace(out)
    return out


# ── Huffman tree ─────────────────────────────────────────────────────────────
#
# Flat node arrays (leaves 0..C-1, internal nodes C..2C-2, root 2C-2) with
# -1 for "no parent/child". Per-class paths are ragged, stored as
# offsets + flat node/code arrays; path node ids are relative (node - C)
# so they index rows of the output table directly.


@dataclass
class HuffmanTree:
    parent: np.ndarray          # int32, -1 at the root
    left: np.ndarray            # int32, -1 at leaves
    right: np.ndarray           # int32, -1 at leaves
    weight: np.ndarray          # float64
    binary: np.ndarray          # bool, True for right children (code bit 1)
    path_offsets: np.ndarray    # int64, length C + 1
    path_nodes: np.ndarray      # int32, leaf-to-root, node id - C
    path_codes: np.ndarray      # bool, aligned with path_nodes

    @property
    def n_classes(self) -> int:
        return (len(self.parent) + 1) // 2

    @property
    def root(self) -> int:
        return len(self.parent) - 1

    def is_leaf(self, node: int) -> bool:
        return self.left[node] == -1 and self.right[node] == -1

    def path(self, cls: int) -> tuple[np.ndarray, np.ndarray]:
        """(internal rows, code bits) for *cls*, ordered leaf to root."""
        s, e = self.path_offsets[cls], self.path_offsets[cls + 1]
        return self.path_nodes[s:e], self.path_codes[s:e]


@njit(cache=True)
def _build_tree(counts, parent, left, right, weight, binary):
    """Two-cursor Huffman merge over leaves sorted by ascending count."""
    osz = len(counts)
    for i in range(2 * osz - 1):
        parent[i] = -1
        left[i] = -1
        right[i] = -1
        weight[i] = np.inf
        binary[i] = False
    for i in range(osz):
        weight[i] = counts[i]

    leaf = 0
    node = osz
    for i in range(osz, 2 * osz - 1):
        mini0 = -1
        mini1 = -1
        for j in range(2):
            if leaf < osz and weight[leaf] < weight[node]:
                pick = leaf
                leaf += 1
            else:
                pick = node
                node += 1
            if j == 0:
                mini0 = pick
            else:
                mini1 = pick
        left[i] = mini0
        right[i] = mini1
        weight[i] = weight[mini0] + weight[mini1]
        parent[mini0] = i
        parent[mini1] = i
        binary[mini1] = True


@njit(cache=True)
def _derive_paths(parent, binary, osz):
    """Walk every leaf up to the root. Returns (offsets, nodes, codes)."""
    offsets = np.zeros(osz + 1, np.int64)
    for i in range(osz):
        depth = 0
        j = i
        while parent[j] != -1:
            depth += 1
            j = parent[j]
        offsets[i + 1] = offsets[i] + depth

    nodes = np.empty(offsets[osz], np.int32)
    codes = np.empty(offsets[osz], np.bool_)
    for i in range(osz):
        p = offsets[i]
        j = i
        while parent[j] != -1:
            nodes[p] = parent[j] - osz
            codes[p] = binary[j]
            p += 1
            j = parent[j]
    return offsets, nodes, codes


def build_tree(counts) -> HuffmanTree:
    """Build a Huffman tree over classes weighted by *counts*.

    *counts* must be sorted in non-decreasing order. The merge trusts the
    order and silently builds a suboptimal tree when it is violated.
    """
    counts = np.asarray(counts, dtype=np.float64)
    if counts.ndim != 1 or len(counts) == 0:
        raise ValueError("counts must be a non-empty 1-D sequence")
    osz = len(counts)
    n_nodes = 2 * osz - 1
    parent = np.empty(n_nodes, np.int32)
    left = np.empty(n_nodes, np.int32)
    right = np.empty(n_nodes, np.int32)
    weight = np.empty(n_nodes, np.float64)
    binary = np.empty(n_nodes, np.bool_)
    _build_tree(counts, parent, left, right, weight, binary)
    offsets, nodes, codes = _derive_paths(parent, binary, np.int64(osz))
    return HuffmanTree(parent=parent, left=left, right=right, weight=weight,
                       binary=binary, path_offsets=offsets,
                       path_nodes=nodes, path_codes=codes)


# ── negative sampling table ──────────────────────────────────────────────────


def build_negative_table(counts, table_size: int,
                         rng: np.random.RandomState) -> np.ndarray:
    """Shuffled table of exactly *table_size* class ids, P(c) ∝ sqrt(count).

    Each class gets floor(share) slots; the slots lost to truncation go to
    the classes with the largest residuals.
    """
    counts = np.asarray(counts, dtype=np.float64)
    if counts.ndim != 1 or len(counts) == 0:
        raise ValueError("counts must be a non-empty 1-D sequence")
    if table_size <= 0:
        raise ValueError("table_size must be > 0")
    if np.any(counts < 0):
        raise ValueError("counts must be non-negative")

    weights = np.sqrt(counts)
    z = float(weights.sum())
    if z <= 0.0:
        raise ValueError("at least one class needs a positive count")

    share = weights * table_size / z
    slots = np.floor(share).astype(np.int64)
    missing = table_size - int(slots.sum())
    if missing > 0:
        slots[np.argsort(slots - share, kind="stable")[:missing]] += 1

    table = np.repeat(np.arange(len(counts), dtype=np.int32), slots)
    rng.shuffle(table)
    return table


@njit(cache=True, nogil=True)
def _get_negative(negatives, negpos, target):
    """Next table entry != target. Returns (class_id, negpos).

    class_id is -1 when a full pass over the table finds no other class.
    """
    n = len(negatives)
    for _ in range(n):
        negative = np.int64(negatives[negpos])
        negpos = (negpos + 1) % n
        if negative != target:
            return negative, negpos
    return np.int64(-1), negpos


# ── scoring kernels ──────────────────────────────────────────────────────────


@njit(fastmath=True, cache=True, nogil=True)
def _binary_logistic(wo, hidden, grad, row, label, lr):
    """One logistic step on output row *row*. Returns its loss."""
    dim = len(hidden)
    dot = 0.0
    for d in range(dim):
        dot += wo[row, d] * hidden[d]
    score = _sigmoid(dot)
    alpha = lr * ((1.0 if label else 0.0) - score)
    for d in range(dim):
        grad[d] += alpha * wo[row, d]
    for d in range(dim):
        wo[row, d] += alpha * hidden[d]
    if label:
        return -_log(score)
    return -_log(1.0 - score)


@njit(fastmath=True, cache=True, nogil=True)
def _negative_sampling(wo, hidden, grad, target, neg, negatives, negpos, lr):
    """Returns (loss, negpos, status); status -1 on a degenerate table."""
    loss = _binary_logistic(wo, hidden, grad, target, True, lr)
    for _ in range(neg):
        negative, negpos = _get_negative(negatives, negpos, target)
        if negative < 0:
            return loss, negpos, np.int64(-1)
        loss += _binary_logistic(wo, hidden, grad, negative, False, lr)
    return loss, negpos, np.int64(0)


@njit(fastmath=True, cache=True, nogil=True)
def _hierarchical_softmax(wo, hidden, grad, target,
                          path_offsets, path_nodes, path_codes, lr):
    loss = 0.0
    for p in range(path_offsets[target], path_offsets[target + 1]):
        loss += _binary_logistic(wo, hidden, grad, path_nodes[p],
                                 path_codes[p], lr)
    return loss


@njit(fastmath=True, cache=True, nogil=True)
def _softmax(wo, hidden, grad, target, lr):
    osz, dim = wo.shape
    output = np.empty(osz, np.float64)
    for i in range(osz):
        s = 0.0
        for d in range(dim):
            s += wo[i, d] * hidden[d]
        output[i] = s
    _softmax_inplace(output)
    for i in range(osz):
        label = 1.0 if i == target else 0.0
        alpha = lr * (label - output[i])
        for d in range(dim):
            grad[d] += alpha * wo[i, d]
        for d in range(dim):
            wo[i, d] += alpha * hidden[d]
    return -_log(output[target])


@njit(fastmath=True, cache=True, nogil=True)
def _update(wi, wo, input_ids, target, loss_kind, neg,
            negatives, negpos, path_offsets, path_nodes, path_codes,
            lr, supervised):
    """One training example: hidden → objective → input-row update.

    Hidden vector and gradient are per-call scratch; only the weight rows
    are shared. Input rows are left untouched when the objective fails.

    Returns (loss, negpos, status).
    """
    hidden = _compute_hidden(wi, input_ids)
    grad = np.zeros(wi.shape[1], np.float64)

    status = np.int64(0)
    if loss_kind == _LOSS_NS:
        loss, negpos, status = _negative_sampling(
            wo, hidden, grad, target, neg, negatives, negpos, lr)
    elif loss_kind == _LOSS_HS:
        loss = _hierarchical_softmax(
            wo, hidden, grad, target, path_offsets, path_nodes,
            path_codes, lr)
    else:
        loss = _softmax(wo, hidden, grad, target, lr)
    if status != 0:
        return loss, negpos, status

    # supervised objectives average the gradient over the bag
    if supervised:
        inv = 1.0 / len(input_ids)
        for d in range(len(grad)):
            grad[d] *= inv
    for k in range(len(input_ids)):
        row = input_ids[k]
        for d in range(len(grad)):
            wi[row, d] += grad[d]
    return loss, negpos, status


# ── ranking helpers ──────────────────────────────────────────────────────────


def _push_bounded(heap, k, score, cls):
    """Push into a min-heap capped at *k* entries (caller checked the min)."""
    if len(heap) < k:
        heapq.heappush(heap, (score, cls))
    else:
        heapq.heapreplace(heap, (score, cls))


# ── configuration ────────────────────────────────────────────────────────────


@dataclass
class Args:
    loss: str           = "ns"      # ns | hs | softmax
    model: str          = "sup"     # sup | cbow | sg
    dim: int            = 100
    neg: int            = 5
    lr: float           = 0.05
    min_lr: float       = MIN_LR
    neg_table_size: int = NEGATIVE_TABLE_SIZE
    verbose: int        = 2

    def __post_init__(self):
        if self.loss not in _LOSS_KINDS:
            raise ValueError(
                f"unknown loss {self.loss!r} (expected ns, hs or softmax)")
        if self.model not in _MODELS:
            raise ValueError(
                f"unknown model {self.model!r} (expected sup, cbow or sg)")
        if self.dim < 1:
            raise ValueError("dim must be >= 1")
        if self.neg < 0:
            raise ValueError("neg must be >= 0")
        if self.min_lr < 0:
            raise ValueError("min_lr must be >= 0")
        if self.neg_table_size < 1:
            raise ValueError("neg_table_size must be >= 1")

    @property
    def supervised(self) -> bool:
        return self.model == "sup"


# ── model ────────────────────────────────────────────────────────────────────


class Model:
    """Training/ranking core over caller-owned input and output tables.

    ::

        model = Model.create(n_in=100, n_out=3, args=Args(dim=10))
        model.configure([5, 10, 20])
        model.update([1, 2, 3], target=0)
    """

    __slots__ = ("wi", "wo", "args", "seed", "negatives", "negpos",
                 "tree", "_lr", "_rng", "_configured")

    def __init__(self, wi: np.ndarray, wo: np.ndarray, args: Args,
                 seed: int = 0):
        if wi.ndim != 2 or wo.ndim != 2:
            raise ValueError("weight tables must be 2-D")
        if wi.shape[1] != args.dim or wo.shape[1] != args.dim:
            raise ValueError(
                f"table widths {wi.shape[1]}/{wo.shape[1]} "
                f"do not match dim={args.dim}")
        if wo.shape[0] < 1:
            raise ValueError("output table needs at least one class")
        self.wi, self.wo = wi, wo
        self.args = args
        self.seed = seed
        self._rng = np.random.RandomState(seed + 42)
        self.negatives = _NO_NEGATIVES
        self.negpos = 0
        self.tree = None
        self._configured = False
        self._lr = args.min_lr
        self.set_learning_rate(args.lr)

    @classmethod
    def create(cls, n_in: int, n_out: int, args: Args,
               seed: int = 0) -> Model:
        """Allocate fresh tables: input ~ U(-1/dim, 1/dim), output zeros."""
        rng = np.random.RandomState(seed)
        bound = 1.0 / args.dim
        wi = rng.uniform(-bound, bound, (n_in, args.dim)).astype(np.float32)
        wo = np.zeros((n_out, args.dim), np.float32)
        return cls(wi, wo, args, seed=seed)

    @property
    def isz(self) -> int:
        return self.wi.shape[0]

    @property
    def osz(self) -> int:
        return self.wo.shape[0]

    # ── learning rate ─────────────────────────────────────────────────────

    def set_learning_rate(self, lr: float):
        self._lr = float(lr) if lr >= self.args.min_lr else self.args.min_lr

    def get_learning_rate(self) -> float:
        return self._lr

    # ── setup ─────────────────────────────────────────────────────────────

    def configure(self, counts):
        """Build the negative table or Huffman tree from per-class counts."""
        counts = np.asarray(counts, dtype=np.float64)
        if counts.ndim != 1 or counts.size != self.osz:
            raise ValueError(
                f"expected {self.osz} class counts, got {counts.size}")

        if self.args.loss == "ns":
            self.negatives = build_negative_table(
                counts, self.args.neg_table_size, self._rng)
            self.negpos = 0
            if self.args.verbose > 1:
                print(f"Negative table: {len(self.negatives)} entries "
                      f"over {self.osz} classes", file=sys.stderr)
        elif self.args.loss == "hs":
            if np.any(np.diff(counts) < 0):
                raise ValueError(
                    "hierarchical softmax needs class counts sorted "
                    "in non-decreasing order")
            self.tree = build_tree(counts)
            if self.args.verbose > 1:
                depth = np.diff(self.tree.path_offsets)
                print(f"Huffman tree: {self.osz} leaves, "
                      f"depth {depth.min()}-{depth.max()}", file=sys.stderr)
        self._configured = True

    def _require_configured(self):
        if not self._configured:
            raise RuntimeError("configure() must be called before "
                               "update() or predict()")

    def _input_array(self, input_ids) -> np.ndarray:
        ids = np.asarray(input_ids, dtype=np.int64).reshape(-1)
        if len(ids) and (ids.min() < 0 or ids.max() >= self.isz):
            raise IndexError(f"input id out of range [0, {self.isz})")
        return ids

    def compute_hidden(self, input_ids) -> np.ndarray:
        """Mean of the input rows selected by *input_ids*."""
        ids = self._input_array(input_ids)
        if len(ids) == 0:
            raise ValueError("input_ids must not be empty")
        return _compute_hidden(self.wi, ids)

    # ── training ──────────────────────────────────────────────────────────

    def update(self, input_ids, target: int) -> float:
        """One SGD step on (input_ids → target). Returns the loss.

        An empty bag is a no-op returning 0.0.
        """
        if not 0 <= target < self.osz:
            raise IndexError(f"target {target} out of range [0, {self.osz})")
        ids = self._input_array(input_ids)
        if len(ids) == 0:
            return 0.0
        self._require_configured()

        tree = self.tree
        if tree is None:
            offsets, nodes, codes = _NO_OFFSETS, _NO_NODES, _NO_CODES
        else:
            offsets, nodes, codes = (tree.path_offsets, tree.path_nodes,
                                     tree.path_codes)

        loss, negpos, status = _update(
            self.wi, self.wo, ids, np.int64(target),
            _LOSS_KINDS[self.args.loss], np.int64(self.args.neg),
            self.negatives, np.int64(self.negpos),
            offsets, nodes, codes,
            np.float64(self._lr), self.args.supervised)
        self.negpos = int(negpos)
        if status != 0:
            raise RuntimeError(
                f"negative table holds no class other than target {target}")
        return float(loss)

    def fit(self, examples, *, epoch: int = 5, lr: float | None = None
            ) -> float:
        """Single-threaded driver over (input_ids, target) pairs.

        Examples are shuffled every epoch; the learning rate decays
        linearly from *lr* (default ``args.lr``) towards ``min_lr``.
        Returns the average loss over all steps.
        """
        examples = list(examples)
        if not examples or epoch < 1:
            return 0.0
        start_lr = self.args.lr if lr is None else lr
        total = epoch * len(examples)
        order = np.arange(len(examples))
        loss_acc, n_acc = 0.0, 0
        t0 = time.time()

        for ep in range(epoch):
            self._rng.shuffle(order)
            for idx in order:
                input_ids, target = examples[idx]
                self.set_learning_rate(start_lr * (1.0 - n_acc / total))
                loss_acc += self.update(input_ids, target)
                n_acc += 1

            if self.args.verbose > 0:
                elapsed = max(time.time() - t0, 1e-6)
                pct = (ep + 1) / epoch * 100.0
                print(f"\r{pct:5.1f}%  pass={ep + 1}/{epoch}"
                      f"  lr={self._lr:.6f}"
                      f"  loss={loss_acc / n_acc:.4f}  ({elapsed:.1f}s)",
                      end="", file=sys.stderr)

        if self.args.verbose > 0:
            print(f"\rDone — avg loss {loss_acc / n_acc:.4f}"
                  f"  ({time.time() - t0:.1f}s)", file=sys.stderr)
        return loss_acc / n_acc

    # ── prediction ────────────────────────────────────────────────────────

    def predict(self, input_ids, k: int = 1) -> list[tuple[float, int]]:
        """Top-k classes as [(score, class_id), ...], best first.

        Scores are log-probabilities under hierarchical softmax and raw
        dot products otherwise.
        """
        if k < 1:
            raise ValueError(f"k must be a positive integer, got {k}")
        ids = self._input_array(input_ids)
        if len(ids) == 0:
            return []
        self._require_configured()

        hidden = _compute_hidden(self.wi, ids)
        if self.args.loss == "hs":
            heap = self._dfs(k, hidden)
        else:
            heap = self._find_k_best(k, self.wo @ hidden)
        return sorted(heap, reverse=True)

    def predict_proba(self, input_ids) -> np.ndarray:
        """Full softmax distribution over all output classes."""
        return softmax(self.wo @ self.compute_hidden(input_ids))

    @staticmethod
    def _find_k_best(k, scores):
        heap = []
        for i, s in enumerate(scores.tolist()):
            if len(heap) == k and s <= heap[0][0]:
                continue
            _push_bounded(heap, k, s, i)
        return heap

    def _dfs(self, k, hidden):
        """Branch-and-bound over the tree; log-probs only decrease downward."""
        tree, wo, osz = self.tree, self.wo, self.osz
        heap = []
        stack = [(tree.root, 0.0)]
        while stack:
            node, score = stack.pop()
            if len(heap) == k and score <= heap[0][0]:
                continue
            if tree.is_leaf(node):
                _push_bounded(heap, k, score, node)
                continue
            f = _sigmoid(float(wo[node - osz] @ hidden))
            # right pushed first so the left subtree is explored first
            stack.append((int(tree.right[node]), score + _log(f)))
            stack.append((int(tree.left[node]), score + _log(1.0 - f)))
        return heap

    def test(self, examples, k: int = 1) -> tuple[int, float, float]:
        """Evaluate on (input_ids, labels) pairs. Returns (N, P@k, R@k)."""
        n = 0
        p_sum = 0.0
        r_sum = 0.0

        for input_ids, labels in examples:
            if np.isscalar(labels):
                true_labels = {int(labels)}
            else:
                true_labels = {int(lbl) for lbl in labels}
            if not true_labels or len(input_ids) == 0:
                continue

            preds = self.predict(input_ids, k=k)
            pred_labels = {cls for _, cls in preds}

            matches = len(pred_labels & true_labels)
            p_sum += matches / max(len(pred_labels), 1)
            r_sum += matches / len(true_labels)
            n += 1

        precision = p_sum / max(n, 1)
        recall = r_sum / max(n, 1)
        return n, precision, recall
