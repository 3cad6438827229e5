# ABOUTME: s-t minimum cut on top of scipy's integer max-flow
# ABOUTME: Float capacities are quantized to a fixed integer budget

import logging
from dataclasses import dataclass

import numpy as np
from scipy.sparse import csr_matrix
from scipy.sparse.csgraph import maximum_flow, breadth_first_order

logger = logging.getLogger('texrecon')

# Total of all quantized capacities stays below int32 overflow
CAPACITY_BUDGET = 2 ** 30


@dataclass
class MinCutResult:
    """
    Attributes:
        cut_value: Cut capacity in the original (unquantized) units
        source_side: (n,) True for nodes on the source side of the cut
    """
    cut_value: float
    source_side: np.ndarray


def minimum_cut(num_nodes: int,
                source_caps: np.ndarray,
                sink_caps: np.ndarray,
                edge_u: np.ndarray,
                edge_v: np.ndarray,
                edge_caps: np.ndarray,
                method: str = 'dinic') -> MinCutResult:
    """
    Minimum s-t cut of a graph with terminal links and directed node edges.

    The source side returned is the set of nodes reachable from the source
    in the residual graph, i.e. the smallest source side among all minimum
    cuts. Nodes that are indifferent end up on the sink side.

    Capacities are scaled so their total equals ``CAPACITY_BUDGET`` and
    rounded to integers; the cut is therefore minimal up to that resolution.

    Args:
        num_nodes: Number of non-terminal nodes n
        source_caps: (n,) capacity of source -> i
        sink_caps: (n,) capacity of i -> sink
        edge_u: (E,) tail of each node edge
        edge_v: (E,) head of each node edge
        edge_caps: (E,) capacity of u -> v
        method: scipy max-flow method ('dinic' or 'edmonds_karp')

    Returns:
        MinCutResult
    """
    source_caps = np.asarray(source_caps, dtype=np.float64)
    sink_caps = np.asarray(sink_caps, dtype=np.float64)
    edge_caps = np.asarray(edge_caps, dtype=np.float64)
    edge_u = np.asarray(edge_u, dtype=np.int64)
    edge_v = np.asarray(edge_v, dtype=np.int64)

    if (source_caps < 0).any() or (sink_caps < 0).any() or (edge_caps < 0).any():
        raise ValueError("Capacities must be non-negative")

    no_cut = MinCutResult(0.0, np.zeros(num_nodes, dtype=bool))
    total = source_caps.sum() + sink_caps.sum() + edge_caps.sum()
    if num_nodes == 0 or total <= 0:
        return no_cut

    source = num_nodes
    sink = num_nodes + 1
    scale = CAPACITY_BUDGET / total

    nodes = np.arange(num_nodes)
    rows = np.concatenate([np.full(num_nodes, source), nodes, edge_u])
    cols = np.concatenate([nodes, np.full(num_nodes, sink), edge_v])
    data = np.rint(np.concatenate([source_caps, sink_caps, edge_caps]) * scale).astype(np.int64)

    keep = (data > 0) & (rows != cols)
    if not keep.any():
        return no_cut

    capacity = csr_matrix((data[keep].astype(np.int32), (rows[keep], cols[keep])),
                          shape=(num_nodes + 2, num_nodes + 2))
    capacity.sort_indices()

    result = maximum_flow(capacity, source, sink, method=method)

    residual = (capacity - result.flow).tocsr()
    residual.data = (residual.data > 0).astype(np.int8)
    residual.eliminate_zeros()

    reachable = breadth_first_order(residual, source, directed=True, return_predecessors=False)
    side = np.zeros(num_nodes + 2, dtype=bool)
    side[reachable] = True

    return MinCutResult(cut_value=result.flow_value / scale, source_side=side[:num_nodes])
