"""
nbody_pyramid.cuda_kernels
CUDA kernel templates for the pyramid Barnes-Hut pipeline.

Templates are formatted with the type specs in ``device._TYPE_SPECS``
(``{T}``, ``{SQRT}``) plus ``{STACK_SIZE}`` and ``{SELF_MASS_RTOL}``;
literal braces are doubled. Texture layout and descriptor table are the
ones documented in :mod:`nbody_pyramid.layout`.
"""

# ============================================================================
# SHARED DEVICE HELPERS
# ============================================================================

_COMMON_HEADER = r'''
extern "C" __device__ __forceinline__
long long texel_flat(long long vx, long long vy, long long vz,
                     long long offset, long long g, long long spr, long long width) {{
    return offset + ((vz / spr) * g + vy) * width + (vz % spr) * g + vx;
}}

extern "C" __device__ __forceinline__
int voxel_coord(double p, double lo, double extent, int g) {{
    if (!(extent > 0.0)) return 0;
    double f = (p - lo) / extent * g;
    if (f < 0.0) return 0;
    if (f >= (double)g) return g - 1;
    return (int)f;
}}
'''

# ============================================================================
# AGGREGATION: one thread per particle, atomicAdd into level 0
# ============================================================================

_AGGREGATE_KERNEL_TEMPLATE = _COMMON_HEADER + r'''
extern "C" __global__
void aggregate_level0(const {T}* __restrict__ pos, const int n,
                      {T}* a0, {T}* a1, {T}* a2,
                      const long long* __restrict__ desc,
                      const double* __restrict__ bounds) {{
    int i = blockDim.x * blockIdx.x + threadIdx.x;
    if (i >= n) return;

    {T} x = pos[4 * i + 0];
    {T} y = pos[4 * i + 1];
    {T} z = pos[4 * i + 2];
    {T} m = pos[4 * i + 3];
    if (!(m > ({T})0)) return;
    if (!(isfinite(x) && isfinite(y) && isfinite(z) && isfinite(m))) return;

    long long offset = desc[0], g = desc[1], spr = desc[2], width = desc[3];
    int vx = voxel_coord(x, bounds[0], bounds[3] - bounds[0], (int)g);
    int vy = voxel_coord(y, bounds[1], bounds[4] - bounds[1], (int)g);
    int vz = voxel_coord(z, bounds[2], bounds[5] - bounds[2], (int)g);
    long long t = 4 * texel_flat(vx, vy, vz, offset, g, spr, width);

    {T} mx = m * x, my = m * y, mz = m * z;
    atomicAdd(&a0[t + 0], mx);
    atomicAdd(&a0[t + 1], my);
    atomicAdd(&a0[t + 2], mz);
    atomicAdd(&a0[t + 3], m);
    atomicAdd(&a1[t + 0], mx * x);
    atomicAdd(&a1[t + 1], my * y);
    atomicAdd(&a1[t + 2], mz * z);
    atomicAdd(&a1[t + 3], mx * y);
    atomicAdd(&a2[t + 0], mx * z);
    atomicAdd(&a2[t + 1], my * z);
}}
'''

# ============================================================================
# PYRAMID REDUCTION: one thread per parent voxel
# ============================================================================

_REDUCE_KERNEL_TEMPLATE = _COMMON_HEADER + r'''
extern "C" __global__
void reduce_level({T}* a0, {T}* a1, {T}* a2,
                  const long long* __restrict__ desc, const int child_level) {{
    const long long* cd = desc + 4 * child_level;
    const long long* pd = desc + 4 * (child_level + 1);
    long long cg = cd[1], pg = pd[1];

    long long idx = (long long)blockDim.x * blockIdx.x + threadIdx.x;
    if (idx >= pg * pg * pg) return;
    long long pz = idx / (pg * pg);
    long long rem = idx - pz * pg * pg;
    long long py = rem / pg;
    long long px = rem - py * pg;

    {T} s[10];
    for (int k = 0; k < 10; ++k) s[k] = ({T})0;

    for (int dz = 0; dz < 2; ++dz) {{
        long long cz = 2 * pz + dz;
        if (cz >= cg) continue;
        for (int dy = 0; dy < 2; ++dy) {{
            long long cy = 2 * py + dy;
            if (cy >= cg) continue;
            for (int dx = 0; dx < 2; ++dx) {{
                long long cx = 2 * px + dx;
                if (cx >= cg) continue;
                long long t = 4 * texel_flat(cx, cy, cz, cd[0], cg, cd[2], cd[3]);
                s[0] += a0[t + 0]; s[1] += a0[t + 1]; s[2] += a0[t + 2]; s[3] += a0[t + 3];
                s[4] += a1[t + 0]; s[5] += a1[t + 1]; s[6] += a1[t + 2]; s[7] += a1[t + 3];
                s[8] += a2[t + 0]; s[9] += a2[t + 1];
            }}
        }}
    }}

    long long pt = 4 * texel_flat(px, py, pz, pd[0], pg, pd[2], pd[3]);
    a0[pt + 0] = s[0]; a0[pt + 1] = s[1]; a0[pt + 2] = s[2]; a0[pt + 3] = s[3];
    a1[pt + 0] = s[4]; a1[pt + 1] = s[5]; a1[pt + 2] = s[6]; a1[pt + 3] = s[7];
    a2[pt + 0] = s[8]; a2[pt + 1] = s[9]; a2[pt + 2] = ({T})0; a2[pt + 3] = ({T})0;
}}
'''

# ============================================================================
# TRAVERSAL: one thread per particle, depth-first walk with a local stack
# ============================================================================

_TRAVERSE_KERNEL_TEMPLATE = _COMMON_HEADER + r'''
#define STACK_SIZE {STACK_SIZE}

extern "C" __device__ __forceinline__
void cell_acceleration({T} px, {T} py, {T} pz, {T} m0,
                       {T} sx, {T} sy, {T} sz,
                       {T} xx, {T} yy, {T} zz, {T} xy, {T} xz, {T} yz,
                       {T} eps2, bool use_quad,
                       {T}* ax, {T}* ay, {T}* az) {{
    {T} inv_m = ({T})1 / m0;
    {T} cx = sx * inv_m, cy = sy * inv_m, cz = sz * inv_m;
    {T} rx = cx - px, ry = cy - py, rz = cz - pz;

    {T} r2 = rx * rx + ry * ry + rz * rz + eps2;
    {T} inv_r = ({T})1 / {SQRT}(r2);
    {T} inv_r2 = inv_r * inv_r;
    {T} inv_r3 = inv_r2 * inv_r;

    *ax += m0 * rx * inv_r3;
    *ay += m0 * ry * inv_r3;
    *az += m0 * rz * inv_r3;

    if (!use_quad) return;

    {T} sxx = xx - m0 * cx * cx, syy = yy - m0 * cy * cy, szz = zz - m0 * cz * cz;
    {T} sxy = xy - m0 * cx * cy, sxz = xz - m0 * cx * cz, syz = yz - m0 * cy * cz;
    {T} tr = sxx + syy + szz;
    {T} qxx = 3 * sxx - tr, qyy = 3 * syy - tr, qzz = 3 * szz - tr;
    {T} qxy = 3 * sxy, qxz = 3 * sxz, qyz = 3 * syz;

    {T} qrx = qxx * rx + qxy * ry + qxz * rz;
    {T} qry = qxy * rx + qyy * ry + qyz * rz;
    {T} qrz = qxz * rx + qyz * ry + qzz * rz;
    {T} rqr = rx * qrx + ry * qry + rz * qrz;

    {T} inv_r5 = inv_r3 * inv_r2;
    {T} inv_r7 = inv_r5 * inv_r2;
    // r = com - p: a = M r/R^3 - Q r/R^5 + 2.5 (r.Q.r) r/R^7, signs fixed by that direction
    {T} k = ({T})2.5 * rqr * inv_r7;
    *ax += k * rx - qrx * inv_r5;
    *ay += k * ry - qry * inv_r5;
    *az += k * rz - qrz * inv_r5;
}}

extern "C" __global__
void traverse(const {T}* __restrict__ pos, const int n,
              const {T}* __restrict__ a0, const {T}* __restrict__ a1,
              const {T}* __restrict__ a2,
              const long long* __restrict__ desc, const int n_levels,
              const double* __restrict__ bounds,
              const double theta, const double softening, const double G,
              const int use_quad, {T}* out) {{
    int i = blockDim.x * blockIdx.x + threadIdx.x;
    if (i >= n) return;

    out[4 * i + 0] = ({T})0;
    out[4 * i + 1] = ({T})0;
    out[4 * i + 2] = ({T})0;
    out[4 * i + 3] = ({T})0;

    {T} px = pos[4 * i + 0], py = pos[4 * i + 1], pz = pos[4 * i + 2], pm = pos[4 * i + 3];
    if (!(isfinite(px) && isfinite(py) && isfinite(pz))) return;

    double ex = bounds[3] - bounds[0];
    double ey = bounds[4] - bounds[1];
    double ez = bounds[5] - bounds[2];
    double max_ext = fmax(ex, fmax(ey, ez));
    {T} eps2 = ({T})(softening * softening);
    double inv_theta = 1.0 / theta;

    {T} self_m = (pm > ({T})0 && isfinite(pm)) ? pm : ({T})0;
    int g0 = (int)desc[1];
    int v0x = voxel_coord(px, bounds[0], ex, g0);
    int v0y = voxel_coord(py, bounds[1], ey, g0);
    int v0z = voxel_coord(pz, bounds[2], ez, g0);

    int stack_lvl[STACK_SIZE];
    long long stack_vox[STACK_SIZE];
    stack_lvl[0] = n_levels - 1;
    stack_vox[0] = 0;
    int sp = 1;

    {T} ax = 0, ay = 0, az = 0;

    while (sp > 0) {{
        --sp;
        int lvl = stack_lvl[sp];
        long long vidx = stack_vox[sp];
        const long long* d = desc + 4 * lvl;
        long long g = d[1];
        long long vz = vidx / (g * g);
        long long rem = vidx - vz * g * g;
        long long vy = rem / g;
        long long vx = rem - vy * g;

        long long t = 4 * texel_flat(vx, vy, vz, d[0], g, d[2], d[3]);
        {T} m0 = a0[t + 3];
        if (!(m0 > ({T})0)) continue;

        {T} sx = a0[t + 0], sy = a0[t + 1], sz = a0[t + 2];
        {T} xx = a1[t + 0], yy = a1[t + 1], zz = a1[t + 2], xy = a1[t + 3];
        {T} xz = a2[t + 0], yz = a2[t + 1];

        if (self_m > ({T})0 && vx == (v0x >> lvl) && vy == (v0y >> lvl) && vz == (v0z >> lvl)) {{
            {T} m_full = m0;
            m0 -= self_m;
            if (m0 <= ({T}){SELF_MASS_RTOL} * m_full) continue;
            sx -= self_m * px; sy -= self_m * py; sz -= self_m * pz;
            xx -= self_m * px * px; yy -= self_m * py * py; zz -= self_m * pz * pz;
            xy -= self_m * px * py; xz -= self_m * px * pz; yz -= self_m * py * pz;
        }}

        if (lvl == 0) {{
            cell_acceleration(px, py, pz, m0, sx, sy, sz, xx, yy, zz, xy, xz, yz,
                              eps2, false, &ax, &ay, &az);
            continue;
        }}

        {T} inv_m = ({T})1 / m0;
        {T} cx = sx * inv_m, cy = sy * inv_m, cz = sz * inv_m;
        {T} dx = cx - px, dy = cy - py, dz = cz - pz;
        double dist = {SQRT}(dx * dx + dy * dy + dz * dz);

        double gx = bounds[0] + (vx + 0.5) * ex / g;
        double gy = bounds[1] + (vy + 0.5) * ey / g;
        double gz = bounds[2] + (vz + 0.5) * ez / g;
        double delta = sqrt((cx - gx) * (cx - gx) + (cy - gy) * (cy - gy) + (cz - gz) * (cz - gz));
        double cell_size = max_ext / g;

        if (dist > cell_size * inv_theta + delta) {{
            cell_acceleration(px, py, pz, m0, sx, sy, sz, xx, yy, zz, xy, xz, yz,
                              eps2, use_quad != 0, &ax, &ay, &az);
            continue;
        }}

        long long cg = desc[4 * (lvl - 1) + 1];
        for (int oz = 0; oz < 2; ++oz) {{
            long long czv = 2 * vz + oz;
            if (czv >= cg) continue;
            for (int oy = 0; oy < 2; ++oy) {{
                long long cyv = 2 * vy + oy;
                if (cyv >= cg) continue;
                for (int ox = 0; ox < 2; ++ox) {{
                    long long cxv = 2 * vx + ox;
                    if (cxv >= cg) continue;
                    stack_lvl[sp] = lvl - 1;
                    stack_vox[sp] = (czv * cg + cyv) * cg + cxv;
                    ++sp;
                }}
            }}
        }}
    }}

    out[4 * i + 0] = ({T})(G * ax);
    out[4 * i + 1] = ({T})(G * ay);
    out[4 * i + 2] = ({T})(G * az);
}}
'''

# ============================================================================
# INTEGRATION: one thread per particle
# ============================================================================

_INTEGRATE_VELOCITY_KERNEL_TEMPLATE = r'''
extern "C" __global__
void integrate_velocity(const {T}* __restrict__ pos, const {T}* __restrict__ vel,
                        const {T}* __restrict__ force, const int n,
                        const {T} dt, const {T} damping,
                        const {T} max_speed, const {T} max_accel,
                        {T}* vel_out) {{
    int i = blockDim.x * blockIdx.x + threadIdx.x;
    if (i >= n) return;

    {T} vx = vel[4 * i + 0], vy = vel[4 * i + 1], vz = vel[4 * i + 2], vw = vel[4 * i + 3];
    vel_out[4 * i + 0] = vx;
    vel_out[4 * i + 1] = vy;
    vel_out[4 * i + 2] = vz;
    vel_out[4 * i + 3] = vw;

    if (!(isfinite(pos[4 * i + 0]) && isfinite(pos[4 * i + 1]) && isfinite(pos[4 * i + 2])
          && isfinite(pos[4 * i + 3]))) return;
    if (!(isfinite(vx) && isfinite(vy) && isfinite(vz))) return;

    {T} fx = force[4 * i + 0], fy = force[4 * i + 1], fz = force[4 * i + 2];
    if (!(isfinite(fx) && isfinite(fy) && isfinite(fz))) return;

    {T} a = {SQRT}(fx * fx + fy * fy + fz * fz);
    if (a > max_accel) {{
        {T} s = max_accel / a;
        fx *= s; fy *= s; fz *= s;
    }}

    {T} scale = ({T})1 - damping;
    {T} nvx = (vx + fx * dt) * scale;
    {T} nvy = (vy + fy * dt) * scale;
    {T} nvz = (vz + fz * dt) * scale;

    {T} speed = {SQRT}(nvx * nvx + nvy * nvy + nvz * nvz);
    if (speed > max_speed) {{
        {T} s = max_speed / speed;
        nvx *= s; nvy *= s; nvz *= s;
    }}

    vel_out[4 * i + 0] = nvx;
    vel_out[4 * i + 1] = nvy;
    vel_out[4 * i + 2] = nvz;
}}
'''

_INTEGRATE_POSITION_KERNEL_TEMPLATE = r'''
extern "C" __global__
void integrate_position(const {T}* __restrict__ pos, const {T}* __restrict__ vel_new,
                        const int n, const {T} dt, {T}* pos_out) {{
    int i = blockDim.x * blockIdx.x + threadIdx.x;
    if (i >= n) return;

    {T} x = pos[4 * i + 0], y = pos[4 * i + 1], z = pos[4 * i + 2], m = pos[4 * i + 3];
    pos_out[4 * i + 0] = x;
    pos_out[4 * i + 1] = y;
    pos_out[4 * i + 2] = z;
    pos_out[4 * i + 3] = m;

    if (!(isfinite(x) && isfinite(y) && isfinite(z) && isfinite(m))) return;
    {T} vx = vel_new[4 * i + 0], vy = vel_new[4 * i + 1], vz = vel_new[4 * i + 2];
    if (!(isfinite(vx) && isfinite(vy) && isfinite(vz))) return;

    pos_out[4 * i + 0] = x + vx * dt;
    pos_out[4 * i + 1] = y + vy * dt;
    pos_out[4 * i + 2] = z + vz * dt;
}}
'''

# Kernel name -> template
_PYRAMID_KERNEL_CONFIG = {
    'aggregate_level0': _AGGREGATE_KERNEL_TEMPLATE,
    'reduce_level': _REDUCE_KERNEL_TEMPLATE,
    'traverse': _TRAVERSE_KERNEL_TEMPLATE,
    'integrate_velocity': _INTEGRATE_VELOCITY_KERNEL_TEMPLATE,
    'integrate_position': _INTEGRATE_POSITION_KERNEL_TEMPLATE,
}
