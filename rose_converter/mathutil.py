"""Small vector / quaternion / matrix helpers (row-major 4x4, (x, y, z, w) quats)."""

from __future__ import annotations

import math
from typing import List, Sequence, Tuple

Vec3 = Tuple[float, float, float]
Quat = Tuple[float, float, float, float]
Matrix4 = List[List[float]]


def vector_length(v: Sequence[float]) -> float:
    return math.sqrt(sum(c * c for c in v))


def vector_normalize(v: Vec3) -> Vec3:
    length = vector_length(v)
    if length == 0.0:
        return (0.0, 0.0, 0.0)
    return (v[0] / length, v[1] / length, v[2] / length)


def vector_lerp(a: Sequence[float], b: Sequence[float], t: float) -> Tuple[float, ...]:
    return tuple(a[i] + (b[i] - a[i]) * t for i in range(len(a)))


# ---------------------------------------------------------------------------
# Quaternions
# ---------------------------------------------------------------------------

def quat_normalize(q: Quat) -> Quat:
    length = vector_length(q)
    if length == 0.0:
        return (0.0, 0.0, 0.0, 1.0)
    return (q[0] / length, q[1] / length, q[2] / length, q[3] / length)


def quat_dot(a: Quat, b: Quat) -> float:
    return a[0] * b[0] + a[1] * b[1] + a[2] * b[2] + a[3] * b[3]


def quat_multiply(a: Quat, b: Quat) -> Quat:
    ax, ay, az, aw = a
    bx, by, bz, bw = b
    return (
        aw * bx + ax * bw + ay * bz - az * by,
        aw * by - ax * bz + ay * bw + az * bx,
        aw * bz + ax * by - ay * bx + az * bw,
        aw * bw - ax * bx - ay * by - az * bz,
    )


def quat_from_axis_angle(axis: Vec3, radians: float) -> Quat:
    x, y, z = vector_normalize(axis)
    s = math.sin(radians * 0.5)
    return (x * s, y * s, z * s, math.cos(radians * 0.5))


def quat_angle(q: Quat) -> float:
    """Rotation angle in radians of a unit quaternion, in [0, pi]."""
    w = min(1.0, abs(quat_normalize(q)[3]))
    return 2.0 * math.acos(w)


def quat_nlerp(a: Quat, b: Quat, t: float) -> Quat:
    if quat_dot(a, b) < 0.0:
        b = (-b[0], -b[1], -b[2], -b[3])
    return quat_normalize(vector_lerp(a, b, t))  # type: ignore[arg-type]


def quat_slerp(a: Quat, b: Quat, t: float) -> Quat:
    a = quat_normalize(a)
    b = quat_normalize(b)
    dot = quat_dot(a, b)
    # Take the short arc.
    if dot < 0.0:
        b = (-b[0], -b[1], -b[2], -b[3])
        dot = -dot
    if dot > 0.9995:
        return quat_nlerp(a, b, t)

    theta = math.acos(dot)
    sin_theta = math.sin(theta)
    wa = math.sin((1.0 - t) * theta) / sin_theta
    wb = math.sin(t * theta) / sin_theta
    return (
        a[0] * wa + b[0] * wb,
        a[1] * wa + b[1] * wb,
        a[2] * wa + b[2] * wb,
        a[3] * wa + b[3] * wb,
    )


def quat_to_matrix3(q: Quat) -> List[List[float]]:
    x, y, z, w = quat_normalize(q)
    return [
        [1.0 - 2.0 * (y * y + z * z), 2.0 * (x * y - z * w), 2.0 * (x * z + y * w)],
        [2.0 * (x * y + z * w), 1.0 - 2.0 * (x * x + z * z), 2.0 * (y * z - x * w)],
        [2.0 * (x * z - y * w), 2.0 * (y * z + x * w), 1.0 - 2.0 * (x * x + y * y)],
    ]


def matrix3_to_quaternion(matrix: List[List[float]]) -> Quat:
    """Convert a row-major 3x3 rotation matrix into an (x, y, z, w) quaternion."""
    m00, m01, m02 = matrix[0]
    m10, m11, m12 = matrix[1]
    m20, m21, m22 = matrix[2]

    trace = m00 + m11 + m22
    if trace > 0.0:
        s = math.sqrt(trace + 1.0) * 2.0
        w = 0.25 * s
        x = (m21 - m12) / s
        y = (m02 - m20) / s
        z = (m10 - m01) / s
    elif m00 > m11 and m00 > m22:
        s = math.sqrt(1.0 + m00 - m11 - m22) * 2.0
        w = (m21 - m12) / s
        x = 0.25 * s
        y = (m01 + m10) / s
        z = (m02 + m20) / s
    elif m11 > m22:
        s = math.sqrt(1.0 + m11 - m00 - m22) * 2.0
        w = (m02 - m20) / s
        x = (m01 + m10) / s
        y = 0.25 * s
        z = (m12 + m21) / s
    else:
        s = math.sqrt(1.0 + m22 - m00 - m11) * 2.0
        w = (m10 - m01) / s
        x = (m02 + m20) / s
        y = (m12 + m21) / s
        z = 0.25 * s

    return quat_normalize((x, y, z, w))


# ---------------------------------------------------------------------------
# 4x4 affine matrices
# ---------------------------------------------------------------------------

def identity_matrix4() -> Matrix4:
    return [[1.0 if row == col else 0.0 for col in range(4)] for row in range(4)]


def compose_matrix4(translation: Vec3, rotation: Quat, scale: Sequence[float]) -> Matrix4:
    r = quat_to_matrix3(rotation)
    return [
        [r[0][0] * scale[0], r[0][1] * scale[1], r[0][2] * scale[2], translation[0]],
        [r[1][0] * scale[0], r[1][1] * scale[1], r[1][2] * scale[2], translation[1]],
        [r[2][0] * scale[0], r[2][1] * scale[1], r[2][2] * scale[2], translation[2]],
        [0.0, 0.0, 0.0, 1.0],
    ]


def matrix4_multiply(a: Matrix4, b: Matrix4) -> Matrix4:
    return [
        [sum(a[row][k] * b[k][col] for k in range(4)) for col in range(4)]
        for row in range(4)
    ]


def matrix4_inverse_affine(m: Matrix4) -> Matrix4:
    """Invert an affine 4x4 transform (any invertible 3x3 part, last row 0 0 0 1)."""
    a, b, c = m[0][0], m[0][1], m[0][2]
    d, e, f = m[1][0], m[1][1], m[1][2]
    g, h, i = m[2][0], m[2][1], m[2][2]

    co00 = e * i - f * h
    co01 = -(d * i - f * g)
    co02 = d * h - e * g
    det = a * co00 + b * co01 + c * co02
    if abs(det) < 1e-12:
        raise ValueError("matrix is not invertible")
    inv_det = 1.0 / det

    r = [
        [co00 * inv_det, -(b * i - c * h) * inv_det, (b * f - c * e) * inv_det],
        [co01 * inv_det, (a * i - c * g) * inv_det, -(a * f - c * d) * inv_det],
        [co02 * inv_det, -(a * h - b * g) * inv_det, (a * e - b * d) * inv_det],
    ]
    t = (m[0][3], m[1][3], m[2][3])
    return [
        [r[0][0], r[0][1], r[0][2], -(r[0][0] * t[0] + r[0][1] * t[1] + r[0][2] * t[2])],
        [r[1][0], r[1][1], r[1][2], -(r[1][0] * t[0] + r[1][1] * t[1] + r[1][2] * t[2])],
        [r[2][0], r[2][1], r[2][2], -(r[2][0] * t[0] + r[2][1] * t[1] + r[2][2] * t[2])],
        [0.0, 0.0, 0.0, 1.0],
    ]


def decompose_matrix4(m: Matrix4) -> Tuple[Vec3, Quat, Vec3]:
    """Split an affine transform without shear into translation, rotation, scale."""
    translation = (m[0][3], m[1][3], m[2][3])
    columns = [(m[0][c], m[1][c], m[2][c]) for c in range(3)]
    scale = [vector_length(col) for col in columns]

    det = (
        m[0][0] * (m[1][1] * m[2][2] - m[1][2] * m[2][1])
        - m[0][1] * (m[1][0] * m[2][2] - m[1][2] * m[2][0])
        + m[0][2] * (m[1][0] * m[2][1] - m[1][1] * m[2][0])
    )
    if det < 0.0:
        scale[0] = -scale[0]

    rotation = [
        [m[row][col] / scale[col] if scale[col] != 0.0 else 0.0 for col in range(3)]
        for row in range(3)
    ]
    return translation, matrix3_to_quaternion(rotation), (scale[0], scale[1], scale[2])


def transform_point(m: Matrix4, v: Sequence[float]) -> Vec3:
    return (
        v[0] * m[0][0] + v[1] * m[0][1] + v[2] * m[0][2] + m[0][3],
        v[0] * m[1][0] + v[1] * m[1][1] + v[2] * m[1][2] + m[1][3],
        v[0] * m[2][0] + v[1] * m[2][1] + v[2] * m[2][2] + m[2][3],
    )


def matrix4_to_column_major_values(matrix: Matrix4) -> List[float]:
    """Serialize a row-major 4x4 matrix into glTF column-major value order."""
    out: List[float] = []
    for col in range(4):
        for row in range(4):
            out.append(float(matrix[row][col]))
    return out


def column_major_values_to_matrix4(values: Sequence[float]) -> Matrix4:
    return [[float(values[col * 4 + row]) for col in range(4)] for row in range(4)]
