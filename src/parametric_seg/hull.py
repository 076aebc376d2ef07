"""
Alpha-shape boundary fitting for 2D point clouds.

The shrink factor runs from 0 (convex hull) to 1 (the tightest boundary
that still encloses every point in a single region). Between the two, the
circumradius cutoff used to keep Delaunay triangles is interpolated
linearly.
"""

import logging

import numpy as np
from scipy.spatial import Delaunay, cKDTree

logger = logging.getLogger(__name__)

# Points closer than this are treated as the same pixel-grid peak
DEDUP_TOLERANCE = np.sqrt(2) + np.finfo(np.float64).eps


def deduplicate_points(points: np.ndarray, tolerance: float = DEDUP_TOLERANCE) -> np.ndarray:
    """
    Greedily merge points that lie within `tolerance` of each other.

    Points are visited in lexicographic (x, then y) order; each kept point
    removes all of its not-yet-visited neighbours inside the tolerance.

    Args:
        points: (N, 2) array of coordinates
        tolerance: Merge distance

    Returns:
        (M, 2) array of kept points, M <= N, in lexicographic order
    """
    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if len(points) == 0:
        return points

    points = np.unique(points, axis=0)
    tree = cKDTree(points)
    removed = np.zeros(len(points), dtype=bool)
    keep = []

    for i in range(len(points)):
        if removed[i]:
            continue
        keep.append(i)
        for j in tree.query_ball_point(points[i], tolerance):
            if j != i:
                removed[j] = True

    return points[keep]


def _circumradii(points: np.ndarray, simplices: np.ndarray) -> np.ndarray:
    """Circumradius of each triangle; degenerate triangles get inf."""
    a = points[simplices[:, 0]]
    b = points[simplices[:, 1]]
    c = points[simplices[:, 2]]

    ab = np.linalg.norm(b - a, axis=1)
    bc = np.linalg.norm(c - b, axis=1)
    ca = np.linalg.norm(a - c, axis=1)
    cross = (b[:, 0] - a[:, 0]) * (c[:, 1] - a[:, 1]) - (b[:, 1] - a[:, 1]) * (c[:, 0] - a[:, 0])
    area = 0.5 * np.abs(cross)

    with np.errstate(divide='ignore', invalid='ignore'):
        radii = ab * bc * ca / (4.0 * area)
    radii[~np.isfinite(radii) | (area <= 1e-12)] = np.inf
    return radii


def _critical_radius(tri: Delaunay, radii: np.ndarray) -> float:
    """
    Smallest cutoff at which the kept triangles form one edge-connected
    region touching every triangulated point.
    """
    simplices = tri.simplices
    n_vertices = len(np.unique(simplices))
    parent = np.arange(len(simplices))

    def find(i: int) -> int:
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    active = np.zeros(len(simplices), dtype=bool)
    covered = np.zeros(len(tri.points), dtype=bool)
    n_covered = 0
    n_components = 0

    for t in np.argsort(radii):
        if not np.isfinite(radii[t]):
            break
        active[t] = True
        n_components += 1
        for v in simplices[t]:
            if not covered[v]:
                covered[v] = True
                n_covered += 1
        for nb in tri.neighbors[t]:
            if nb >= 0 and active[nb]:
                ra, rb = find(t), find(nb)
                if ra != rb:
                    parent[ra] = rb
                    n_components -= 1
        if n_covered == n_vertices and n_components == 1:
            return float(radii[t])

    finite = radii[np.isfinite(radii)]
    return float(finite.max())


def _signed_area(polygon: np.ndarray) -> float:
    """Shoelace area; positive for counter-clockwise vertex order (x right, y up)."""
    x = polygon[:, 0]
    y = polygon[:, 1]
    return 0.5 * float(np.sum(x * np.roll(y, -1) - np.roll(x, -1) * y))


def _trace_loops(edges: list[tuple[int, int]]) -> list[list[int]]:
    """Chain directed boundary edges into closed vertex loops."""
    outgoing: dict[int, list[int]] = {}
    for a, b in edges:
        outgoing.setdefault(a, []).append(b)

    loops = []
    for start in list(outgoing):
        while outgoing.get(start):
            loop = [start]
            current = outgoing[start].pop()
            while current != start:
                loop.append(current)
                nxt = outgoing.get(current)
                if not nxt:
                    break
                current = nxt.pop()
            loops.append(loop)
    return loops


def alpha_shape(points: np.ndarray, shrink_factor: float = 0.5) -> np.ndarray:
    """
    Fit an alpha-shape boundary to a 2D point set.

    Args:
        points: (N, 2) array of coordinates, N >= 3, not all collinear
        shrink_factor: 0 gives the convex hull, 1 the tightest single region

    Returns:
        Indices into `points` of the outer boundary vertices, in
        counter-clockwise order, closed (first index repeated at the end)

    Raises:
        ValueError: Fewer than 3 points or no non-degenerate triangles
        scipy.spatial.QhullError: Triangulation failed (e.g. collinear input)
    """
    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if len(points) < 3:
        raise ValueError(f"Alpha shape needs at least 3 points, got {len(points)}")

    tri = Delaunay(points)
    radii = _circumradii(points, tri.simplices)
    if not np.any(np.isfinite(radii)):
        raise ValueError("Point set is degenerate (no triangle with positive area)")

    shrink_factor = float(np.clip(shrink_factor, 0.0, 1.0))
    r_max = float(radii[np.isfinite(radii)].max())
    r_crit = _critical_radius(tri, radii)
    cutoff = r_crit + (1.0 - shrink_factor) * (r_max - r_crit)

    kept = tri.simplices[radii <= cutoff * (1 + 1e-9)]

    directed = set()
    for a, b, c in kept:
        pa, pb, pc = points[a], points[b], points[c]
        cross = (pb[0] - pa[0]) * (pc[1] - pa[1]) - (pb[1] - pa[1]) * (pc[0] - pa[0])
        if cross < 0:
            b, c = c, b
        directed.update({(a, b), (b, c), (c, a)})

    boundary_edges = [(a, b) for a, b in directed if (b, a) not in directed]
    loops = _trace_loops(boundary_edges)
    loops = [loop for loop in loops if len(loop) >= 3]
    if not loops:
        raise ValueError("Alpha shape produced no closed boundary")

    outer = max(loops, key=lambda loop: _signed_area(points[loop]))
    logger.debug(
        f"Alpha shape: {len(points)} points, {len(kept)}/{len(tri.simplices)} triangles, "
        f"{len(outer)} boundary vertices"
    )
    return np.array(outer + [outer[0]], dtype=np.intp)
