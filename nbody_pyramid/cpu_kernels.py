"""
nbody_pyramid.cpu_kernels
Numba kernels for every pass of the pyramid Barnes-Hut pipeline.

Each kernel mirrors one CUDA kernel in :mod:`nbody_pyramid.cuda_kernels` and
works on the same flat texture arrays:

* particle textures ``pos`` / ``vel`` / ``force``: ``(capacity, 4)``;
* moment pyramids ``a0`` / ``a1`` / ``a2``: ``(total_texels, 4)``;
* level descriptor table ``desc``: ``(num_levels, 4)`` int64 rows of
  ``(offset, grid, slices_per_row, width)``.

Kernels write into caller-provided output arrays and never allocate
textures themselves.
"""
from __future__ import annotations

import numpy as np
from numba import get_num_threads, get_thread_id, njit, prange

from .config import MAX_LEVELS

# Finite-math flags ('nnan', 'ninf') are left out so the isfinite guards survive.
_FASTMATH = {'nsz', 'arcp', 'contract', 'reassoc'}

# Depth-first refinement pushes at most 7 net cells per level.
STACK_SIZE = 8 * MAX_LEVELS

# A cell whose mass after removing the particle's own deposit is below this
# fraction of the original is treated as holding only the particle itself.
SELF_MASS_RTOL = 1e-5


# ============================================================================
# INDEXING HELPERS
# ============================================================================

@njit(cache=True, inline='always')
def _texel_flat(vx, vy, vz, offset, g, spr, width):
    """Flat texel index of voxel (vx, vy, vz) in a Z-slice tiled level."""
    return offset + ((vz // spr) * g + vy) * width + (vz % spr) * g + vx


@njit(cache=True, inline='always')
def _voxel_coord(p, lo, extent, g):
    """Clamped voxel coordinate of world coordinate *p* on one axis."""
    if not (extent > 0.0):
        return 0
    f = (p - lo) / extent * g
    if f < 0.0:
        return 0
    if f >= g:
        return g - 1
    return int(f)


# ============================================================================
# AGGREGATION (L0 deposit)
# ============================================================================

@njit(fastmath=_FASTMATH, cache=True)
def aggregate_level0(pos, n, a0, a1, a2, desc, bmin, bmax):
    """Scatter-add the raw moments of every particle into level 0.

    Particles with mass <= 0 or a non-finite position or mass are skipped.
    Serial on purpose: several particles may land in one voxel.
    """
    offset, g, spr, width = desc[0, 0], desc[0, 1], desc[0, 2], desc[0, 3]
    ex = bmax[0] - bmin[0]
    ey = bmax[1] - bmin[1]
    ez = bmax[2] - bmin[2]

    for i in range(n):
        x = np.float64(pos[i, 0])
        y = np.float64(pos[i, 1])
        z = np.float64(pos[i, 2])
        m = np.float64(pos[i, 3])
        if not (m > 0.0):
            continue
        if not (np.isfinite(x) and np.isfinite(y) and np.isfinite(z) and np.isfinite(m)):
            continue

        vx = _voxel_coord(x, bmin[0], ex, g)
        vy = _voxel_coord(y, bmin[1], ey, g)
        vz = _voxel_coord(z, bmin[2], ez, g)
        t = _texel_flat(vx, vy, vz, offset, g, spr, width)

        mx = m * x
        my = m * y
        mz = m * z
        a0[t, 0] += mx
        a0[t, 1] += my
        a0[t, 2] += mz
        a0[t, 3] += m
        a1[t, 0] += mx * x
        a1[t, 1] += my * y
        a1[t, 2] += mz * z
        a1[t, 3] += mx * y
        a2[t, 0] += mx * z
        a2[t, 1] += my * z


# ============================================================================
# PYRAMID REDUCTION
# ============================================================================

@njit(parallel=True, fastmath=_FASTMATH, cache=True)
def reduce_level(a0, a1, a2, desc, child_level):
    """Build level ``child_level + 1`` by summing the 8 children of every parent."""
    c_off, cg, cspr, cw = (desc[child_level, 0], desc[child_level, 1],
                           desc[child_level, 2], desc[child_level, 3])
    p_lvl = child_level + 1
    p_off, pg, pspr, pw = desc[p_lvl, 0], desc[p_lvl, 1], desc[p_lvl, 2], desc[p_lvl, 3]

    total = pg * pg * pg
    for idx in prange(total):
        pz = idx // (pg * pg)
        rem = idx - pz * pg * pg
        py = rem // pg
        px = rem - py * pg

        s0 = 0.0
        s1 = 0.0
        s2 = 0.0
        s3 = 0.0
        q0 = 0.0
        q1 = 0.0
        q2 = 0.0
        q3 = 0.0
        r0 = 0.0
        r1 = 0.0
        for dz in range(2):
            cz = 2 * pz + dz
            if cz >= cg:
                continue
            for dy in range(2):
                cy = 2 * py + dy
                if cy >= cg:
                    continue
                for dx in range(2):
                    cx = 2 * px + dx
                    if cx >= cg:
                        continue
                    t = _texel_flat(cx, cy, cz, c_off, cg, cspr, cw)
                    s0 += a0[t, 0]
                    s1 += a0[t, 1]
                    s2 += a0[t, 2]
                    s3 += a0[t, 3]
                    q0 += a1[t, 0]
                    q1 += a1[t, 1]
                    q2 += a1[t, 2]
                    q3 += a1[t, 3]
                    r0 += a2[t, 0]
                    r1 += a2[t, 1]

        pt = _texel_flat(px, py, pz, p_off, pg, pspr, pw)
        a0[pt, 0] = s0
        a0[pt, 1] = s1
        a0[pt, 2] = s2
        a0[pt, 3] = s3
        a1[pt, 0] = q0
        a1[pt, 1] = q1
        a1[pt, 2] = q2
        a1[pt, 3] = q3
        a2[pt, 0] = r0
        a2[pt, 1] = r1
        a2[pt, 2] = 0.0
        a2[pt, 3] = 0.0


# ============================================================================
# TRAVERSAL (forces)
# ============================================================================

@njit(fastmath=_FASTMATH, cache=True, inline='always')
def _cell_acceleration(px, py, pz, m0, sx, sy, sz,
                       xx, yy, zz, xy, xz, yz, eps2, use_quad):
    """Softened monopole (+ quadrupole) acceleration of a cell on point p, without G."""
    inv_m = 1.0 / m0
    cx = sx * inv_m
    cy = sy * inv_m
    cz = sz * inv_m
    rx = cx - px
    ry = cy - py
    rz = cz - pz

    r2 = rx * rx + ry * ry + rz * rz + eps2
    inv_r = 1.0 / np.sqrt(r2)
    inv_r2 = inv_r * inv_r
    inv_r3 = inv_r2 * inv_r

    ax = m0 * rx * inv_r3
    ay = m0 * ry * inv_r3
    az = m0 * rz * inv_r3

    if use_quad:
        # Central second moments S = M2 - M0 mu mu^T
        sxx = xx - m0 * cx * cx
        syy = yy - m0 * cy * cy
        szz = zz - m0 * cz * cz
        sxy = xy - m0 * cx * cy
        sxz = xz - m0 * cx * cz
        syz = yz - m0 * cy * cz
        tr = sxx + syy + szz

        # Trace-free Q = 3S - tr(S) I
        qxx = 3.0 * sxx - tr
        qyy = 3.0 * syy - tr
        qzz = 3.0 * szz - tr
        qxy = 3.0 * sxy
        qxz = 3.0 * sxz
        qyz = 3.0 * syz

        qrx = qxx * rx + qxy * ry + qxz * rz
        qry = qxy * rx + qyy * ry + qyz * rz
        qrz = qxz * rx + qyz * ry + qzz * rz
        rqr = rx * qrx + ry * qry + rz * qrz

        inv_r5 = inv_r3 * inv_r2
        inv_r7 = inv_r5 * inv_r2
        # r = com - p: a = M r/R^3 - Q r/R^5 + 2.5 (r.Q.r) r/R^7, signs fixed by that direction
        k = 2.5 * rqr * inv_r7
        ax += k * rx - qrx * inv_r5
        ay += k * ry - qry * inv_r5
        az += k * rz - qrz * inv_r5

    return ax, ay, az


@njit(parallel=True, fastmath=_FASTMATH, cache=True)
def traverse(pos, n, a0, a1, a2, desc, bmin, bmax,
             theta, softening, G, use_quad, out):
    """Per-particle Barnes-Hut walk of the moment pyramid.

    Starting at the root, a non-empty cell at level >= 1 is accepted when
    ``d > cellSize / theta + delta`` and otherwise replaced by its 8
    children; cells reached at level 0 contribute a softened monopole. The
    particle's own deposit is removed from every cell that holds it.
    Accelerations (G applied) are written to ``out[:n, :3]``.
    """
    n_levels = desc.shape[0]
    root = n_levels - 1
    g0 = desc[0, 1]

    ex = bmax[0] - bmin[0]
    ey = bmax[1] - bmin[1]
    ez = bmax[2] - bmin[2]
    max_ext = max(ex, max(ey, ez))
    eps2 = softening * softening
    inv_theta = 1.0 / theta

    # One DFS stack per worker thread
    n_threads = get_num_threads()
    stacks_lvl = np.empty((n_threads, STACK_SIZE), np.int64)
    stacks_vox = np.empty((n_threads, STACK_SIZE), np.int64)

    for i in prange(n):
        out[i, 0] = 0.0
        out[i, 1] = 0.0
        out[i, 2] = 0.0
        out[i, 3] = 0.0

        px = np.float64(pos[i, 0])
        py = np.float64(pos[i, 1])
        pz = np.float64(pos[i, 2])
        pm = np.float64(pos[i, 3])
        if not (np.isfinite(px) and np.isfinite(py) and np.isfinite(pz)):
            continue

        # Matches the deposit rule of aggregate_level0
        self_m = pm if (pm > 0.0 and np.isfinite(pm)) else 0.0
        v0x = _voxel_coord(px, bmin[0], ex, g0)
        v0y = _voxel_coord(py, bmin[1], ey, g0)
        v0z = _voxel_coord(pz, bmin[2], ez, g0)

        stack_lvl = stacks_lvl[get_thread_id()]
        stack_vox = stacks_vox[get_thread_id()]
        stack_lvl[0] = root
        stack_vox[0] = 0
        sp = 1

        ax = 0.0
        ay = 0.0
        az = 0.0

        while sp > 0:
            sp -= 1
            lvl = stack_lvl[sp]
            vidx = stack_vox[sp]

            off = desc[lvl, 0]
            g = desc[lvl, 1]
            spr = desc[lvl, 2]
            w = desc[lvl, 3]
            vz = vidx // (g * g)
            rem = vidx - vz * g * g
            vy = rem // g
            vx = rem - vy * g

            t = _texel_flat(vx, vy, vz, off, g, spr, w)
            m0 = np.float64(a0[t, 3])
            if not (m0 > 0.0):
                continue

            sx = np.float64(a0[t, 0])
            sy = np.float64(a0[t, 1])
            sz = np.float64(a0[t, 2])
            xx = np.float64(a1[t, 0])
            yy = np.float64(a1[t, 1])
            zz = np.float64(a1[t, 2])
            xy = np.float64(a1[t, 3])
            xz = np.float64(a2[t, 0])
            yz = np.float64(a2[t, 1])

            if self_m > 0.0 and vx == (v0x >> lvl) and vy == (v0y >> lvl) and vz == (v0z >> lvl):
                m_full = m0
                m0 -= self_m
                if m0 <= SELF_MASS_RTOL * m_full:
                    continue
                sx -= self_m * px
                sy -= self_m * py
                sz -= self_m * pz
                xx -= self_m * px * px
                yy -= self_m * py * py
                zz -= self_m * pz * pz
                xy -= self_m * px * py
                xz -= self_m * px * pz
                yz -= self_m * py * pz

            if lvl == 0:
                # Near field: monopole, no acceptance test
                dax, day, daz = _cell_acceleration(px, py, pz, m0, sx, sy, sz,
                                                   xx, yy, zz, xy, xz, yz, eps2, False)
                ax += dax
                ay += day
                az += daz
                continue

            inv_m = 1.0 / m0
            cx = sx * inv_m
            cy = sy * inv_m
            cz = sz * inv_m
            dx = cx - px
            dy = cy - py
            dz = cz - pz
            d = np.sqrt(dx * dx + dy * dy + dz * dz)

            gx = bmin[0] + (vx + 0.5) * ex / g
            gy = bmin[1] + (vy + 0.5) * ey / g
            gz = bmin[2] + (vz + 0.5) * ez / g
            delta = np.sqrt((cx - gx) ** 2 + (cy - gy) ** 2 + (cz - gz) ** 2)
            cell_size = max_ext / g

            if d > cell_size * inv_theta + delta:
                dax, day, daz = _cell_acceleration(px, py, pz, m0, sx, sy, sz,
                                                   xx, yy, zz, xy, xz, yz, eps2, use_quad)
                ax += dax
                ay += day
                az += daz
                continue

            cg = desc[lvl - 1, 1]
            for oz in range(2):
                czv = 2 * vz + oz
                if czv >= cg:
                    continue
                for oy in range(2):
                    cyv = 2 * vy + oy
                    if cyv >= cg:
                        continue
                    for ox in range(2):
                        cxv = 2 * vx + ox
                        if cxv >= cg:
                            continue
                        stack_lvl[sp] = lvl - 1
                        stack_vox[sp] = (czv * cg + cyv) * cg + cxv
                        sp += 1

        out[i, 0] = G * ax
        out[i, 1] = G * ay
        out[i, 2] = G * az


# ============================================================================
# INTEGRATION
# ============================================================================

@njit(parallel=True, fastmath=_FASTMATH, cache=True)
def integrate_velocity(pos, vel, force, n, dt, damping, max_speed, max_accel, vel_out):
    """Kick: v' = (v + a dt)(1 - damping) with acceleration and speed clamps."""
    scale = 1.0 - damping
    for i in prange(n):
        vx = np.float64(vel[i, 0])
        vy = np.float64(vel[i, 1])
        vz = np.float64(vel[i, 2])
        vel_out[i, 0] = vel[i, 0]
        vel_out[i, 1] = vel[i, 1]
        vel_out[i, 2] = vel[i, 2]
        vel_out[i, 3] = vel[i, 3]

        if not (np.isfinite(pos[i, 0]) and np.isfinite(pos[i, 1]) and np.isfinite(pos[i, 2])
                and np.isfinite(pos[i, 3])):
            continue
        if not (np.isfinite(vx) and np.isfinite(vy) and np.isfinite(vz)):
            continue

        fx = np.float64(force[i, 0])
        fy = np.float64(force[i, 1])
        fz = np.float64(force[i, 2])
        if not (np.isfinite(fx) and np.isfinite(fy) and np.isfinite(fz)):
            continue

        a = np.sqrt(fx * fx + fy * fy + fz * fz)
        if a > max_accel:
            s = max_accel / a
            fx *= s
            fy *= s
            fz *= s

        nvx = (vx + fx * dt) * scale
        nvy = (vy + fy * dt) * scale
        nvz = (vz + fz * dt) * scale

        speed = np.sqrt(nvx * nvx + nvy * nvy + nvz * nvz)
        if speed > max_speed:
            s = max_speed / speed
            nvx *= s
            nvy *= s
            nvz *= s

        vel_out[i, 0] = nvx
        vel_out[i, 1] = nvy
        vel_out[i, 2] = nvz


@njit(parallel=True, fastmath=_FASTMATH, cache=True)
def integrate_position(pos, vel_new, n, dt, pos_out):
    """Drift: x' = x + v' dt; mass channel preserved."""
    for i in prange(n):
        x = np.float64(pos[i, 0])
        y = np.float64(pos[i, 1])
        z = np.float64(pos[i, 2])
        m = np.float64(pos[i, 3])
        pos_out[i, 0] = pos[i, 0]
        pos_out[i, 1] = pos[i, 1]
        pos_out[i, 2] = pos[i, 2]
        pos_out[i, 3] = pos[i, 3]

        if not (np.isfinite(x) and np.isfinite(y) and np.isfinite(z) and np.isfinite(m)):
            continue
        vx = np.float64(vel_new[i, 0])
        vy = np.float64(vel_new[i, 1])
        vz = np.float64(vel_new[i, 2])
        if not (np.isfinite(vx) and np.isfinite(vy) and np.isfinite(vz)):
            continue

        pos_out[i, 0] = x + vx * dt
        pos_out[i, 1] = y + vy * dt
        pos_out[i, 2] = z + vz * dt


# ============================================================================
# BOUNDS REDUCTION
# ============================================================================

@njit(fastmath=_FASTMATH, cache=True)
def masked_bounds(pos, n, out):
    """Min (row 0) and max (row 1) over particles with finite position and mass > 0.

    Returns the number of particles that took part.
    """
    count = 0
    for k in range(3):
        out[0, k] = np.inf
        out[1, k] = -np.inf
    for i in range(n):
        m = pos[i, 3]
        if not (m > 0.0 and np.isfinite(m)):
            continue
        if not (np.isfinite(pos[i, 0]) and np.isfinite(pos[i, 1]) and np.isfinite(pos[i, 2])):
            continue
        count += 1
        for k in range(3):
            v = pos[i, k]
            if v < out[0, k]:
                out[0, k] = v
            if v > out[1, k]:
                out[1, k] = v
    return count


# ============================================================================
# DIRECT SUMMATION REFERENCE
# ============================================================================

@njit(parallel=True, fastmath=_FASTMATH, cache=True)
def direct_accelerations(pos, mass, softening, G):
    """O(N^2) Plummer-softened accelerations, shape (N, 3)."""
    N = pos.shape[0]
    acc = np.zeros((N, 3), dtype=np.float64)
    eps2 = softening * softening

    for i in prange(N):
        ax, ay, az = 0.0, 0.0, 0.0
        xi, yi, zi = pos[i, 0], pos[i, 1], pos[i, 2]
        for j in range(N):
            if i == j:
                continue
            mj = mass[j]
            if not (mj > 0.0):
                continue
            dx = pos[j, 0] - xi
            dy = pos[j, 1] - yi
            dz = pos[j, 2] - zi
            r2 = dx * dx + dy * dy + dz * dz + eps2
            inv_r = 1.0 / np.sqrt(r2)
            factor = mj * inv_r * inv_r * inv_r
            ax += factor * dx
            ay += factor * dy
            az += factor * dz
        acc[i, 0] = G * ax
        acc[i, 1] = G * ay
        acc[i, 2] = G * az

    return acc


@njit(parallel=True, fastmath=_FASTMATH, cache=True)
def direct_potential(pos, mass, softening, G):
    """O(N^2) Plummer-softened potential at each particle, shape (N,)."""
    N = pos.shape[0]
    phi = np.zeros(N, dtype=np.float64)
    eps2 = softening * softening

    for i in prange(N):
        xi, yi, zi = pos[i, 0], pos[i, 1], pos[i, 2]
        pot_i = 0.0
        for j in range(N):
            if i == j:
                continue
            mj = mass[j]
            if not (mj > 0.0):
                continue
            dx = pos[j, 0] - xi
            dy = pos[j, 1] - yi
            dz = pos[j, 2] - zi
            pot_i -= mj / np.sqrt(dx * dx + dy * dy + dz * dz + eps2)
        phi[i] = G * pot_i

    return phi
