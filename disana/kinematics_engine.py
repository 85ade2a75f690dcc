"""
DVCS Kinematics Engine
======================

Event-level reconstruction of ep -> e'p'γ kinematics from measured momenta.

Key pieces:
1. ``FourVector`` value type with the (+,-,-,-) metric
2. ``KinematicRecord`` holding the invariants, the lepton-hadron plane angle
   and the exclusivity observables of one event
3. A single array kernel shared by the per-event path and the vectorised
   column path, so both produce identical numbers

Degenerate geometries (zero-length plane normals, zero 3-momenta) are not
guarded: they yield NaN in the affected fields and are expected to be removed
by the event selection upstream.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Dict, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from .core_framework import (
    AnalysisContext, ELECTRON_MASS, PHOTON_MASS, PROTON_MASS, as_float_array,
)


# ============================================================================
# FOUR-VECTOR VALUE TYPE
# ============================================================================

@dataclass(frozen=True)
class FourVector:
    """Energy-momentum four-vector (E, px, py, pz)."""
    e: float
    px: float
    py: float
    pz: float

    @classmethod
    def from_spherical(cls, p: float, theta: float, phi: float, mass: float) -> 'FourVector':
        """Build from momentum magnitude, polar and azimuthal angle (radians)."""
        px = p * np.sin(theta) * np.cos(phi)
        py = p * np.sin(theta) * np.sin(phi)
        pz = p * np.cos(theta)
        e = np.sqrt(px * px + py * py + pz * pz + mass * mass)
        return cls(float(e), float(px), float(py), float(pz))

    @classmethod
    def from_array(cls, values: Sequence[float]) -> 'FourVector':
        e, px, py, pz = (float(v) for v in values)
        return cls(e, px, py, pz)

    def to_array(self) -> np.ndarray:
        return np.array([self.e, self.px, self.py, self.pz], dtype=np.float64)

    @property
    def vect(self) -> np.ndarray:
        """Spatial 3-momentum."""
        return np.array([self.px, self.py, self.pz], dtype=np.float64)

    def __add__(self, other: 'FourVector') -> 'FourVector':
        return FourVector(self.e + other.e, self.px + other.px,
                          self.py + other.py, self.pz + other.pz)

    def __sub__(self, other: 'FourVector') -> 'FourVector':
        return FourVector(self.e - other.e, self.px - other.px,
                          self.py - other.py, self.pz - other.pz)

    def __neg__(self) -> 'FourVector':
        return FourVector(-self.e, -self.px, -self.py, -self.pz)

    def dot(self, other: 'FourVector') -> float:
        """Minkowski inner product."""
        return self.e * other.e - self.px * other.px - self.py * other.py - self.pz * other.pz

    def mag2(self) -> float:
        return self.dot(self)

    def mag(self) -> float:
        """Invariant mass; negative for space-like vectors."""
        return float(_signed_sqrt(self.mag2()))

    def perp(self) -> float:
        return float(np.hypot(self.px, self.py))

    def angle(self, other: 'FourVector') -> float:
        """Opening angle between the 3-momenta, radians."""
        with np.errstate(divide='ignore', invalid='ignore'):
            return float(_angle(self.vect, other.vect))


# ============================================================================
# ARRAY HELPERS (last axis = vector components)
# ============================================================================

def _dot3(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    return np.sum(a * b, axis=-1)


def _norm3(a: np.ndarray) -> np.ndarray:
    return np.sqrt(_dot3(a, a))


def _unit3(a: np.ndarray) -> np.ndarray:
    return a / _norm3(a)[..., np.newaxis]


def _mag2(v: np.ndarray) -> np.ndarray:
    return v[..., 0] ** 2 - _dot3(v[..., 1:], v[..., 1:])


def _dot4(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    return a[..., 0] * b[..., 0] - _dot3(a[..., 1:], b[..., 1:])


def _signed_sqrt(x):
    return np.sign(x) * np.sqrt(np.abs(x))


def _angle(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    cos = _dot3(a, b) / (_norm3(a) * _norm3(b))
    return np.arccos(np.clip(cos, -1.0, 1.0))


def helicity_angle(q: np.ndarray, k: np.ndarray, p: np.ndarray) -> np.ndarray:
    """
    Signed angle in degrees, shifted into [0, 360], between the (q, k) plane
    and the (q, p) plane.

    The sign comes from the triple product (q x k)·p, the magnitude from the
    arc-cosine of the normalised dot product of the two plane normals.
    """
    n_qk = np.cross(q, k)
    triple = _dot3(n_qk, p)
    sign = triple / np.abs(triple)
    n_qp = np.cross(q, p)
    cos = _dot3(n_qk, n_qp) / (_norm3(n_qk) * _norm3(n_qp))
    return sign * np.degrees(np.arccos(np.clip(cos, -1.0, 1.0))) + 180.0


def spherical_to_four_vectors(p, theta, phi, mass: float) -> np.ndarray:
    """Stack (p, θ, φ) arrays into an (n, 4) array of four-vectors."""
    p = as_float_array(p, "p")
    theta = as_float_array(theta, "theta")
    phi = as_float_array(phi, "phi")
    if not (len(p) == len(theta) == len(phi)):
        raise ValueError(f"Length mismatch: p={len(p)}, theta={len(theta)}, phi={len(phi)}")
    px = p * np.sin(theta) * np.cos(phi)
    py = p * np.sin(theta) * np.sin(phi)
    pz = p * np.cos(theta)
    e = np.sqrt(px * px + py * py + pz * pz + mass * mass)
    return np.stack([e, px, py, pz], axis=-1)


# ============================================================================
# KINEMATIC RECORD
# ============================================================================

@dataclass(frozen=True)
class KinematicRecord:
    """Derived quantities of one event."""
    q2: float
    xb: float
    t: float
    phi: float
    w: float
    nu: float
    y: float
    # exclusivity observables
    mx2_ep: float
    emiss: float
    ptmiss: float
    mx2_epg: float
    delta_phi: float
    theta_gamma_gamma: float
    mx2_egamma: float
    theta_e_gamma: float
    delta_e: float

    def as_dict(self) -> Dict[str, float]:
        """Values keyed by analysis column name."""
        values = asdict(self)
        return {column: values[attr] for attr, column in RECORD_COLUMNS.items()}

    def classifiers(self) -> Tuple[float, float, float, float]:
        """(Q², -t, x_B, φ) tuple used for binning."""
        return self.q2, self.t, self.xb, self.phi

    @property
    def is_degenerate(self) -> bool:
        return any(np.isnan(v) for v in asdict(self).values())


RECORD_COLUMNS: Dict[str, str] = {
    'q2': 'Q2',
    'xb': 'xB',
    't': 't',
    'phi': 'phi',
    'w': 'W',
    'nu': 'nu',
    'y': 'y',
    'mx2_ep': 'Mx2_ep',
    'emiss': 'Emiss',
    'ptmiss': 'PTmiss',
    'mx2_epg': 'Mx2_epg',
    'delta_phi': 'DeltaPhi',
    'theta_gamma_gamma': 'Theta_gamma_gamma',
    'mx2_egamma': 'Mx2_eg',
    'theta_e_gamma': 'Theta_e_gamma',
    'delta_e': 'DeltaE',
}

KINEMATIC_COLUMNS: Tuple[str, ...] = tuple(RECORD_COLUMNS.values())


# ============================================================================
# KINEMATICS KERNEL
# ============================================================================

def _kinematics_kernel(e_in: np.ndarray,
                       e_out: np.ndarray,
                       p_in: np.ndarray,
                       p_out: np.ndarray,
                       gamma: np.ndarray) -> Dict[str, np.ndarray]:
    """Compute all record fields from four-vector arrays of shape (..., 4)."""
    with np.errstate(divide='ignore', invalid='ignore'):
        q = e_in - e_out  # virtual photon

        q2 = -_mag2(q)
        nu = q[..., 0]
        y = nu / e_in[..., 0]
        w = _signed_sqrt(_mag2(p_in + q))
        xb = q2 / (2.0 * _dot4(p_in, q))
        t = np.abs(_mag2(p_in - p_out))

        # azimuthal angle between lepton and hadron planes
        q_vec = q[..., 1:]
        k_in = e_in[..., 1:]
        k_out = e_out[..., 1:]
        p_vec = p_out[..., 1:]
        g_vec = gamma[..., 1:]

        n_lepton = _unit3(np.cross(k_in, k_out))
        n_hadron = _unit3(np.cross(q_vec, p_vec))
        cos_phi = _dot3(n_lepton, n_hadron)
        sin_phi = _dot3(np.cross(n_lepton, n_hadron), _unit3(q_vec))
        phi = np.degrees(np.arctan2(sin_phi, cos_phi) + np.pi)
        phi = np.where(phi >= 360.0, phi - 360.0, phi)

        total_initial = e_in + p_in
        missing_ep = total_initial - e_out - p_out
        missing = missing_ep - gamma

        mx2_ep = _mag2(missing_ep)
        emiss = missing[..., 0]
        ptmiss = np.hypot(missing[..., 1], missing[..., 2])
        mx2_epg = _mag2(missing)

        delta_phi = np.abs(helicity_angle(q_vec, k_in, g_vec)
                           - helicity_angle(q_vec, k_in, -p_vec))

        theta_gamma_gamma = np.degrees(_angle(g_vec, missing_ep[..., 1:]))
        mx2_egamma = _mag2(total_initial - e_out - gamma)
        theta_e_gamma = np.degrees(_angle(k_out, g_vec))
        delta_e = total_initial[..., 0] - (e_out[..., 0] + p_out[..., 0] + gamma[..., 0])

    return {
        'q2': q2, 'xb': xb, 't': t, 'phi': phi, 'w': w, 'nu': nu, 'y': y,
        'mx2_ep': mx2_ep, 'emiss': emiss, 'ptmiss': ptmiss, 'mx2_epg': mx2_epg,
        'delta_phi': delta_phi, 'theta_gamma_gamma': theta_gamma_gamma,
        'mx2_egamma': mx2_egamma, 'theta_e_gamma': theta_e_gamma,
        'delta_e': delta_e,
    }


# ============================================================================
# ENGINE
# ============================================================================

ParticleInput = Union[Tuple[float, float, float], Sequence[float]]
ParticleArrays = Union[Tuple[np.ndarray, np.ndarray, np.ndarray], Mapping[str, np.ndarray]]


class KinematicsEngine:
    """
    Reconstructs DVCS kinematics for fixed-target scattering.

    The incoming electron travels along +z with the beam energy (massless
    approximation), the target proton is at rest. Particle arguments are
    ``(p, theta, phi)`` triples with angles in radians.
    """

    def __init__(self, context: Optional[AnalysisContext] = None,
                 electron_mass: Optional[float] = None,
                 proton_mass: Optional[float] = None,
                 photon_mass: float = PHOTON_MASS):
        self.context = context or AnalysisContext(verbose=False)
        self.electron_mass = self.context.electron_mass if electron_mass is None else electron_mass
        self.proton_mass = self.context.proton_mass if proton_mass is None else proton_mass
        self.photon_mass = photon_mass

    def initial_state(self, beam_energy: float) -> Tuple[FourVector, FourVector]:
        """Beam electron and target proton four-vectors."""
        beam_energy = float(beam_energy)
        return (FourVector(beam_energy, 0.0, 0.0, beam_energy),
                FourVector(self.proton_mass, 0.0, 0.0, 0.0))

    def compute(self,
                beam_energy: float,
                scattered_electron: ParticleInput,
                recoil_proton: ParticleInput,
                photon: ParticleInput) -> KinematicRecord:
        """Kinematic record of one event from measured (p, θ, φ) triples."""
        e_in, p_in = self.initial_state(beam_energy)
        e_out = FourVector.from_spherical(*scattered_electron, mass=self.electron_mass)
        p_out = FourVector.from_spherical(*recoil_proton, mass=self.proton_mass)
        gamma = FourVector.from_spherical(*photon, mass=self.photon_mass)
        return self.compute_from_vectors(e_in, e_out, p_in, p_out, gamma)

    def compute_from_vectors(self,
                             electron_in: FourVector,
                             electron_out: FourVector,
                             proton_in: FourVector,
                             proton_out: FourVector,
                             photon: FourVector) -> KinematicRecord:
        values = _kinematics_kernel(electron_in.to_array(), electron_out.to_array(),
                                    proton_in.to_array(), proton_out.to_array(),
                                    photon.to_array())
        return KinematicRecord(**{k: float(v) for k, v in values.items()})

    def compute_arrays(self,
                       beam_energy: Union[float, np.ndarray],
                       electron: ParticleArrays,
                       proton: ParticleArrays,
                       photon: ParticleArrays) -> Dict[str, np.ndarray]:
        """
        Vectorised reconstruction over event arrays.

        Each particle is given as ``(p, theta, phi)`` arrays or a mapping with
        those keys. Returns a dict keyed by analysis column name.
        """
        e_out = spherical_to_four_vectors(*_unpack(electron), mass=self.electron_mass)
        p_out = spherical_to_four_vectors(*_unpack(proton), mass=self.proton_mass)
        gamma = spherical_to_four_vectors(*_unpack(photon), mass=self.photon_mass)
        n = len(e_out)
        if len(p_out) != n or len(gamma) != n:
            raise ValueError(f"Particle arrays differ in length: {n}, {len(p_out)}, {len(gamma)}")

        energy = np.broadcast_to(np.asarray(beam_energy, dtype=np.float64), (n,))
        e_in = np.zeros((n, 4))
        e_in[:, 0] = energy
        e_in[:, 3] = energy
        p_in = np.zeros((n, 4))
        p_in[:, 0] = self.proton_mass

        values = _kinematics_kernel(e_in, e_out, p_in, p_out, gamma)
        return {RECORD_COLUMNS[k]: np.asarray(v, dtype=np.float64) for k, v in values.items()}


def _unpack(particle: ParticleArrays) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    if isinstance(particle, Mapping):
        return particle['p'], particle['theta'], particle['phi']
    p, theta, phi = particle
    return p, theta, phi


def compute_kinematics(beam_energy: float,
                       scattered_electron: ParticleInput,
                       recoil_proton: ParticleInput,
                       photon: ParticleInput) -> KinematicRecord:
    """Per-event reconstruction with default particle masses."""
    return KinematicsEngine().compute(beam_energy, scattered_electron, recoil_proton, photon)


__all__ = [
    'FourVector', 'KinematicRecord', 'KinematicsEngine',
    'RECORD_COLUMNS', 'KINEMATIC_COLUMNS',
    'helicity_angle', 'spherical_to_four_vectors', 'compute_kinematics',
    'ELECTRON_MASS', 'PROTON_MASS',
]
