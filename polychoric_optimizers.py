"""
Minimizers used by the polychoric estimators.

Three strategies are needed:

- a 1-D bracketing minimizer (Brent's golden-section/parabolic hybrid) for the
  two-step estimate of rho,
- a multi-dimensional gradient minimizer (conjugate gradient) for the joint
  estimate with analytic derivatives,
- a multi-dimensional derivative-free minimizer (Nelder-Mead simplex) for the
  joint estimate without derivatives.

Each strategy has a SciPy-backed implementation and a self-contained one with
the same contract. `select_*` picks one per configuration, based on which
implementation offers the requested minimizer type.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple, Type

import numpy as np
from scipy.optimize import minimize, minimize_scalar

from polychoric_tables import ParameterError

logger = logging.getLogger(__name__)

# -----------------------------------
# Constants
# -----------------------------------
BACKENDS = ("auto", "scipy", "native")
GOLDEN = 0.3819660
SQRT_EPS = np.sqrt(np.finfo(float).eps)
MIN_TOLERANCE = 1e-12
ARMIJO_C1 = 1e-4
MIN_LINE_STEP = 1e-12

ScalarFunction = Callable[[float], float]
VectorFunction = Callable[[np.ndarray], float]
GradientFunction = Callable[[np.ndarray], np.ndarray]


# -----------------------------------
# Data structures
# -----------------------------------
@dataclass
class MinimizationResult:
    """Outcome of a minimization. `x` is a float for 1-D minimizers."""
    x: object
    fun: float
    iterations: int
    converged: bool
    method: str
    log: List[str] = field(default_factory=list)

    @property
    def trace(self) -> str:
        return "\n".join(self.log)


def format_vector_row(iteration: int, x: np.ndarray, fun: float, extra: str = "") -> str:
    args = " ".join(f"{v:10.3e}" for v in x)
    row = f"{iteration:5d} args={args} f() = {fun:.7f}"
    return f"{row} {extra}" if extra else row


class _RecordingObjective:
    """Wraps an objective and remembers the value at every evaluated point."""

    def __init__(self, func: Callable):
        self.func = func
        self.values: Dict[bytes, float] = {}
        self.nfev = 0

    def __call__(self, x):
        value = float(self.func(x))
        self.nfev += 1
        self.values[np.asarray(x, dtype=float).tobytes()] = value
        return value

    def value_at(self, x) -> float:
        key = np.asarray(x, dtype=float).tobytes()
        if key not in self.values:
            return self(x)
        return self.values[key]


# -----------------------------------
# 1-D bracketing minimizers
# -----------------------------------
class ScalarMinimizer(ABC):
    """Minimizes a function of one variable over a closed interval."""
    backend = ""
    minimizer_types: Tuple[str, ...] = ()

    def __init__(self, minimizer_type: str = "brent", epsilon: float = 1e-6,
                 max_iterations: int = 300):
        self.minimizer_type = minimizer_type
        self.epsilon = epsilon
        self.max_iterations = max_iterations

    @property
    def name(self) -> str:
        return f"{self.minimizer_type} ({self.backend})"

    @abstractmethod
    def minimize(self, func: ScalarFunction, lower: float, upper: float,
                 guess: float = 0.0) -> MinimizationResult:
        ...


class NativeBrentMinimizer(ScalarMinimizer):
    """
    Brent's method on an explicit bracket [lower, upper], one step per
    iteration. Stops when the bracket is narrower than `epsilon`.
    `golden` disables the parabolic steps.
    """
    backend = "native"
    minimizer_types = ("brent", "golden")

    def minimize(self, func, lower, upper, guess=0.0):
        a, b = float(lower), float(upper)
        z = float(guess)
        f_z = func(z)
        v = w = a + GOLDEN * (b - a)
        f_v = f_w = func(v)
        d = e = 0.0
        parabolic = self.minimizer_type == "brent"

        log = [f"{'iter':>5s} [{'lower':>10s}, {'upper':>10s}] {'min':>10s} {'f(min)':>12s} {'width':>10s}",
               f"{0:5d} [{a:.7f}, {b:.7f}] {z:.7f} {f_z:12.5f} {b - a:.7f}"]
        converged = False
        iteration = 0
        while iteration < self.max_iterations:
            iteration += 1
            midpoint = 0.5 * (a + b)
            tolerance = SQRT_EPS * abs(z) + MIN_TOLERANCE
            use_golden = True
            if parabolic and abs(e) > tolerance:
                r = (z - w) * (f_z - f_v)
                q = (z - v) * (f_z - f_w)
                p = (z - v) * q - (z - w) * r
                q = 2.0 * (q - r)
                if q > 0:
                    p = -p
                else:
                    q = -q
                e_previous = e
                e = d
                # accept the parabolic step only if it falls inside the bracket
                # and is smaller than half the step before last
                if abs(p) < abs(0.5 * q * e_previous) and q * (a - z) < p < q * (b - z):
                    use_golden = False
                    d = p / q
                    u = z + d
                    if (u - a) < 2 * tolerance or (b - u) < 2 * tolerance:
                        d = tolerance if z < midpoint else -tolerance

            if use_golden:
                e = (b - z) if z < midpoint else (a - z)
                d = GOLDEN * e

            u = z + d if abs(d) >= tolerance else z + (tolerance if d > 0 else -tolerance)
            f_u = func(u)

            if f_u <= f_z:
                if u < z:
                    b = z
                else:
                    a = z
                v, f_v = w, f_w
                w, f_w = z, f_z
                z, f_z = u, f_u
            else:
                if u < z:
                    a = u
                else:
                    b = u
                if f_u <= f_w or w == z:
                    v, f_v = w, f_w
                    w, f_w = u, f_u
                elif f_u <= f_v or v == z or v == w:
                    v, f_v = u, f_u

            converged = (b - a) < self.epsilon
            log.append(f"{iteration:5d} [{a:.7f}, {b:.7f}] {z:.7f} {f_z:12.5f} {b - a:.7f}")
            if converged:
                break

        log.append("converged" if converged else "not converged")
        return MinimizationResult(x=z, fun=f_z, iterations=iteration, converged=converged,
                                  method=self.name, log=log)


class ScipyBrentMinimizer(ScalarMinimizer):
    """Bounded Brent minimization through `scipy.optimize.minimize_scalar`."""
    backend = "scipy"
    minimizer_types = ("brent",)

    def minimize(self, func, lower, upper, guess=0.0):
        objective = _RecordingObjective(func)
        res = minimize_scalar(objective, bounds=(lower, upper), method="bounded",
                              options={"xatol": self.epsilon, "maxiter": self.max_iterations})
        log = [f"{'eval':>5s} {'x':>10s} {'f(x)':>12s}"]
        for i, (key, value) in enumerate(objective.values.items(), start=1):
            x = float(np.frombuffer(key, dtype=float)[0])
            log.append(f"{i:5d} {x:.7f} {value:12.5f}")
        converged = bool(res.success)
        log.append("converged" if converged else f"not converged: {res.message}")
        return MinimizationResult(x=float(res.x), fun=float(res.fun),
                                  iterations=int(getattr(res, "nit", objective.nfev)),
                                  converged=converged, method=self.name, log=log)


# -----------------------------------
# Gradient-based minimizers
# -----------------------------------
class GradientMinimizer(ABC):
    """Minimizes a function of a vector using its gradient."""
    backend = ""
    minimizer_types: Tuple[str, ...] = ()

    def __init__(self, minimizer_type: str = "conjugate_pr", tolerance: float = 1e-3,
                 max_iterations: int = 300, step_size: float = 1.0):
        self.minimizer_type = minimizer_type
        self.tolerance = tolerance
        self.max_iterations = max_iterations
        self.step_size = step_size

    @property
    def name(self) -> str:
        return f"{self.minimizer_type} ({self.backend})"

    @abstractmethod
    def minimize(self, func: VectorFunction, grad: GradientFunction,
                 x0: np.ndarray) -> MinimizationResult:
        ...


class NativeConjugateGradient(GradientMinimizer):
    """
    Nonlinear conjugate gradient with a backtracking (Armijo) line search.
    The trial step starts at `step_size` along the normalized search direction
    and doubles after every accepted step. Converges when the Euclidean norm
    of the gradient falls below `tolerance`.
    """
    backend = "native"
    minimizer_types = ("conjugate_pr", "conjugate_fr", "steepest_descent")

    def _beta(self, g_new: np.ndarray, g: np.ndarray) -> float:
        gg = float(g @ g)
        if self.minimizer_type == "steepest_descent" or gg == 0.0:
            return 0.0
        if self.minimizer_type == "conjugate_fr":
            return float(g_new @ g_new) / gg
        return max(0.0, float(g_new @ (g_new - g)) / gg)

    def minimize(self, func, grad, x0):
        x = np.array(x0, dtype=float)
        fx = float(func(x))
        g = np.asarray(grad(x), dtype=float)
        p = -g
        step = self.step_size
        log = [format_vector_row(0, x, fx)]

        converged = bool(np.linalg.norm(g) < self.tolerance)
        iteration = 0
        while not converged and iteration < self.max_iterations:
            iteration += 1
            if p @ g >= 0:
                p = -g
            direction = p / np.linalg.norm(p)
            slope = float(g @ direction)

            t = step
            while t > MIN_LINE_STEP:
                x_new = x + t * direction
                f_new = float(func(x_new))
                if np.isfinite(f_new) and f_new <= fx + ARMIJO_C1 * t * slope:
                    break
                t *= 0.5
            else:
                log.append(f"{iteration:5d} line search made no progress")
                break

            g_new = np.asarray(grad(x_new), dtype=float)
            beta = 0.0 if iteration % x.size == 0 else self._beta(g_new, g)
            p = -g_new + beta * p
            x, fx, g = x_new, f_new, g_new
            step = 2.0 * t

            converged = bool(np.linalg.norm(g) < self.tolerance)
            log.append(format_vector_row(iteration, x, fx, f"|g| = {np.linalg.norm(g):.3e}"))

        log.append("converged" if converged else "not converged")
        return MinimizationResult(x=x, fun=fx, iterations=iteration, converged=converged,
                                  method=self.name, log=log)


class ScipyGradientMinimizer(GradientMinimizer):
    """Gradient minimization through `scipy.optimize.minimize`."""
    backend = "scipy"
    methods = {"conjugate_pr": "CG", "bfgs": "BFGS", "l-bfgs-b": "L-BFGS-B"}
    minimizer_types = tuple(methods)

    def minimize(self, func, grad, x0):
        objective = _RecordingObjective(func)
        method = self.methods[self.minimizer_type]
        options = {"maxiter": self.max_iterations, "gtol": self.tolerance}
        if method in ("CG", "BFGS"):
            options["norm"] = 2

        log: List[str] = []
        x_start = np.array(x0, dtype=float)
        log.append(format_vector_row(0, x_start, objective(x_start)))

        def callback(xk):
            log.append(format_vector_row(len(log), xk, objective.value_at(xk)))

        res = minimize(objective, x_start, jac=grad, method=method, options=options,
                       callback=callback)
        converged = bool(res.success)
        log.append("converged" if converged else f"not converged: {res.message}")
        return MinimizationResult(x=np.asarray(res.x, dtype=float), fun=float(res.fun),
                                  iterations=int(res.nit), converged=converged,
                                  method=self.name, log=log)


# -----------------------------------
# Derivative-free minimizers
# -----------------------------------
class SimplexMinimizer(ABC):
    """Minimizes a function of a vector from function values only."""
    backend = ""
    minimizer_types: Tuple[str, ...] = ()

    def __init__(self, minimizer_type: str = "nmsimplex", epsilon: float = 1e-6,
                 max_iterations: int = 300, step_size: float = 1.0):
        self.minimizer_type = minimizer_type
        self.epsilon = epsilon
        self.max_iterations = max_iterations
        self.step_size = step_size

    @property
    def name(self) -> str:
        return f"{self.minimizer_type} ({self.backend})"

    def initial_simplex(self, x0: np.ndarray) -> np.ndarray:
        x0 = np.asarray(x0, dtype=float)
        return np.vstack([x0, x0 + self.step_size * np.eye(x0.size)])

    @staticmethod
    def simplex_size(simplex: np.ndarray) -> float:
        """Mean distance of the vertices from their centroid."""
        return float(np.mean(np.linalg.norm(simplex - simplex.mean(axis=0), axis=1)))

    @abstractmethod
    def minimize(self, func: VectorFunction, x0: np.ndarray) -> MinimizationResult:
        ...


class NativeNelderMead(SimplexMinimizer):
    """Nelder-Mead simplex search; converges when the simplex size drops below `epsilon`."""
    backend = "native"
    minimizer_types = ("nmsimplex",)

    def minimize(self, func, x0):
        simplex = self.initial_simplex(x0)
        fvals = np.array([func(v) for v in simplex], dtype=float)
        log = [format_vector_row(0, simplex[0], fvals[0],
                                 f"size = {self.simplex_size(simplex):.3f}")]

        converged = False
        iteration = 0
        while iteration < self.max_iterations:
            iteration += 1
            order = np.argsort(fvals, kind="stable")
            simplex, fvals = simplex[order], fvals[order]
            worst = simplex[-1]
            centroid = simplex[:-1].mean(axis=0)

            x_r = 2.0 * centroid - worst
            f_r = func(x_r)
            shrink = False
            if f_r < fvals[0]:
                x_e = 3.0 * centroid - 2.0 * worst
                f_e = func(x_e)
                simplex[-1], fvals[-1] = (x_e, f_e) if f_e < f_r else (x_r, f_r)
            elif f_r < fvals[-2]:
                simplex[-1], fvals[-1] = x_r, f_r
            elif f_r < fvals[-1]:
                x_c = centroid + 0.5 * (x_r - centroid)
                f_c = func(x_c)
                if f_c <= f_r:
                    simplex[-1], fvals[-1] = x_c, f_c
                else:
                    shrink = True
            else:
                x_c = centroid + 0.5 * (worst - centroid)
                f_c = func(x_c)
                if f_c < fvals[-1]:
                    simplex[-1], fvals[-1] = x_c, f_c
                else:
                    shrink = True

            if shrink:
                simplex[1:] = simplex[0] + 0.5 * (simplex[1:] - simplex[0])
                fvals[1:] = [func(v) for v in simplex[1:]]

            best = int(np.argmin(fvals))
            size = self.simplex_size(simplex)
            log.append(format_vector_row(iteration, simplex[best], fvals[best], f"size = {size:.3f}"))
            if size < self.epsilon:
                converged = True
                break

        best = int(np.argmin(fvals))
        log.append("converged" if converged else "not converged")
        return MinimizationResult(x=simplex[best].copy(), fun=float(fvals[best]),
                                  iterations=iteration, converged=converged,
                                  method=self.name, log=log)


class ScipySimplexMinimizer(SimplexMinimizer):
    """Nelder-Mead through `scipy.optimize.minimize` with an explicit initial simplex."""
    backend = "scipy"
    minimizer_types = ("nmsimplex",)

    def minimize(self, func, x0):
        objective = _RecordingObjective(func)
        x_start = np.array(x0, dtype=float)
        log = [format_vector_row(0, x_start, objective(x_start))]

        def callback(xk):
            log.append(format_vector_row(len(log), xk, objective.value_at(xk)))

        res = minimize(objective, x_start, method="Nelder-Mead", callback=callback,
                       options={"initial_simplex": self.initial_simplex(x_start),
                                "xatol": self.epsilon, "fatol": np.inf,
                                "maxiter": self.max_iterations})
        converged = bool(res.success)
        log.append("converged" if converged else f"not converged: {res.message}")
        return MinimizationResult(x=np.asarray(res.x, dtype=float), fun=float(res.fun),
                                  iterations=int(res.nit), converged=converged,
                                  method=self.name, log=log)


# -----------------------------------
# Capability-based selection
# -----------------------------------
def _select(backend: str, minimizer_type: str, scipy_cls: Type, native_cls: Type) -> Type:
    if backend not in BACKENDS:
        raise ParameterError(f"Unknown backend '{backend}'. Choose one of {BACKENDS}.")
    if backend in ("auto", "scipy") and minimizer_type in scipy_cls.minimizer_types:
        return scipy_cls
    if backend in ("auto", "native") and minimizer_type in native_cls.minimizer_types:
        return native_cls
    raise ParameterError(
        f"Minimizer type '{minimizer_type}' is not available with backend '{backend}'.")


def select_scalar_minimizer(minimizer_type: str, backend: str = "auto") -> Type[ScalarMinimizer]:
    return _select(backend, minimizer_type, ScipyBrentMinimizer, NativeBrentMinimizer)


def select_gradient_minimizer(minimizer_type: str, backend: str = "auto") -> Type[GradientMinimizer]:
    return _select(backend, minimizer_type, ScipyGradientMinimizer, NativeConjugateGradient)


def select_simplex_minimizer(minimizer_type: str, backend: str = "auto") -> Type[SimplexMinimizer]:
    return _select(backend, minimizer_type, ScipySimplexMinimizer, NativeNelderMead)


def available_minimizer_types(backend: Optional[str] = None) -> Dict[str, Tuple[str, ...]]:
    """Minimizer types offered per strategy, for one backend or for all of them."""
    pairs = {
        "two_step": (ScipyBrentMinimizer, NativeBrentMinimizer),
        "joint_derivative": (ScipyGradientMinimizer, NativeConjugateGradient),
        "joint_no_derivative": (ScipySimplexMinimizer, NativeNelderMead),
    }
    result = {}
    for strategy, classes in pairs.items():
        names: List[str] = []
        for cls in classes:
            if backend in (None, "auto", cls.backend):
                names.extend(t for t in cls.minimizer_types if t not in names)
        result[strategy] = tuple(names)
    return result
