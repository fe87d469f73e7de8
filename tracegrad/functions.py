# Copyright (c) 2024 Jake Ehrlich
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import numpy as np # type: ignore
from enum import Enum
from typing import Any, Callable, Dict, Tuple
from tracegrad.tensor import Matrix

ArrayFn = Callable[[np.ndarray], np.ndarray]
BiArrayFn = Callable[[np.ndarray, np.ndarray], np.ndarray]

class UnaryFunctionType(Enum):
    ABS = 'abs'
    COS = 'cos'
    COSH = 'cosh'
    EXP = 'exp'
    LOG = 'log'
    LOG10 = 'log10'
    SIN = 'sin'
    SINH = 'sinh'
    SQRT = 'sqrt'
    CBRT = 'cbrt'
    MULINV = 'mulinv'
    TAN = 'tan'
    TANH = 'tanh'
    LINEAR = 'linear'
    SIGMOID = 'sigmoid'
    SWISH = 'swish'
    HARDSIGMOID = 'hardsigmoid'
    BIPOLARSIGMOID = 'bipolarsigmoid'
    TANSIG = 'tansig'
    HARDTANH = 'hardtanh'
    SOFTPLUS = 'softplus'
    SOFTSIGN = 'softsign'
    RELU = 'relu'
    ELU = 'elu'
    SELU = 'selu'
    GELU = 'gelu'
    GAUSSIAN = 'gaussian'
    SINACT = 'sinact'
    SOFTMAX = 'softmax'
    CUSTOM = 'custom'

class BinaryFunctionType(Enum):
    POW = 'pow'
    MEAN_SQUARED_ERROR = 'mean_squared_error'
    MEAN_SQUARED_LOGARITHMIC_ERROR = 'mean_squared_logarithmic_error'
    MEAN_ABSOLUTE_ERROR = 'mean_absolute_error'
    MEAN_ABSOLUTE_PERCENTAGE_ERROR = 'mean_absolute_percentage_error'
    CROSS_ENTROPY = 'cross_entropy'
    KULLBACK_LEIBLER = 'kullback_leibler'
    NEGATIVE_LOG_LIKELIHOOD = 'negative_log_likelihood'
    POISSON = 'poisson'
    HINGE = 'hinge'
    SQUARED_HINGE = 'squared_hinge'
    HUBER = 'huber'
    MAX = 'max'
    MIN = 'min'
    CUSTOM = 'custom'

# Default parameters for the configurable function types
UNARY_DEFAULTS: Dict[UnaryFunctionType, Dict[str, float]] = {
    UnaryFunctionType.RELU: {'threshold': 0.0, 'alpha': 0.0},
    UnaryFunctionType.ELU: {'threshold': 0.0, 'alpha': 1.0},
    UnaryFunctionType.SELU: {'threshold': 0.0, 'alpha': 1.6732, 'lambda_': 1.0507},
}

BINARY_DEFAULTS: Dict[BinaryFunctionType, Dict[str, float]] = {
    BinaryFunctionType.HINGE: {'margin': 1.0},
    BinaryFunctionType.HUBER: {'delta': 1.0},
}

def _resolve_params(defaults: Dict[str, float], params: Dict[str, Any], name: str) -> Dict[str, float]:
    unknown = set(params) - set(defaults)
    if unknown:
        raise ValueError(f"Unknown parameters for {name}: {sorted(unknown)}")
    resolved = dict(defaults)
    resolved.update({k: float(v) for k, v in params.items()})
    return resolved

def _sigmoid(x):
    return 1.0 / (1.0 + np.exp(-x))

def _gelu_inner(x):
    return np.sqrt(2.0 / np.pi) * (x + 0.044715 * x ** 3)

def _unary_pair(function_type: UnaryFunctionType, p: Dict[str, float]) -> Tuple[ArrayFn, ArrayFn]:
    t = UnaryFunctionType
    if function_type == t.ABS:
        return np.abs, np.sign
    if function_type == t.COS:
        return np.cos, lambda x: -np.sin(x)
    if function_type == t.COSH:
        return np.cosh, np.sinh
    if function_type == t.EXP:
        return np.exp, np.exp
    if function_type == t.LOG:
        return np.log, lambda x: 1.0 / x
    if function_type == t.LOG10:
        return np.log10, lambda x: 1.0 / (np.log(10.0) * x)
    if function_type == t.SIN:
        return np.sin, np.cos
    if function_type == t.SINH:
        return np.sinh, np.cosh
    if function_type == t.SQRT:
        return np.sqrt, lambda x: 1.0 / (2.0 * np.sqrt(x))
    if function_type == t.CBRT:
        return np.cbrt, lambda x: 1.0 / (3.0 * np.cbrt(x) ** 2)
    if function_type == t.MULINV:
        return lambda x: 1.0 / x, lambda x: -1.0 / x ** 2
    if function_type == t.TAN:
        return np.tan, lambda x: 1.0 + np.tan(x) ** 2
    if function_type == t.TANH:
        return np.tanh, lambda x: 1.0 - np.tanh(x) ** 2
    if function_type == t.LINEAR:
        return lambda x: x, np.ones_like
    if function_type == t.SIGMOID:
        return _sigmoid, lambda x: _sigmoid(x) * (1.0 - _sigmoid(x))
    if function_type == t.SWISH:
        return (lambda x: x * _sigmoid(x),
                lambda x: _sigmoid(x) + x * _sigmoid(x) * (1.0 - _sigmoid(x)))
    if function_type == t.HARDSIGMOID:
        return (lambda x: np.minimum(1.0, np.maximum(0.0, 0.125 * x + 0.5)),
                lambda x: np.where((x < -4.0) | (x > 4.0), 0.0, 0.125))
    if function_type == t.BIPOLARSIGMOID:
        return (lambda x: 2.0 / (1.0 + np.exp(-x)) - 1.0,
                lambda x: 2.0 * np.exp(x) / (np.exp(x) + 1.0) ** 2)
    if function_type == t.TANSIG:
        return (lambda x: 2.0 / (np.exp(-2.0 * x) + 1.0) - 1.0,
                lambda x: 4.0 * np.exp(2.0 * x) / (np.exp(2.0 * x) + 1.0) ** 2)
    if function_type == t.HARDTANH:
        return (lambda x: np.minimum(1.0, np.maximum(-1.0, 0.5 * x)),
                lambda x: np.where((x < -2.0) | (x > 2.0), 0.0, 0.5))
    if function_type == t.SOFTPLUS:
        return lambda x: np.log1p(np.exp(x)), _sigmoid
    if function_type == t.SOFTSIGN:
        return lambda x: x / (np.abs(x) + 1.0), lambda x: 1.0 / (np.abs(x) + 1.0) ** 2
    if function_type == t.RELU:
        threshold, alpha = p['threshold'], p['alpha']
        return (lambda x: np.where(x < threshold, alpha * x, x),
                lambda x: np.where(x < threshold, alpha, 1.0))
    if function_type == t.ELU:
        threshold, alpha = p['threshold'], p['alpha']
        return (lambda x: np.where(x < threshold, alpha * (np.exp(x) - 1.0), x),
                lambda x: np.where(x < threshold, alpha * np.exp(x), 1.0))
    if function_type == t.SELU:
        threshold, alpha, lambda_ = p['threshold'], p['alpha'], p['lambda_']
        return (lambda x: np.where(x < threshold, lambda_ * alpha * (np.exp(x) - 1.0), lambda_ * x),
                lambda x: np.where(x < threshold, lambda_ * alpha * np.exp(x), lambda_))
    if function_type == t.GELU:
        return (lambda x: 0.5 * x * (1.0 + np.tanh(_gelu_inner(x))),
                lambda x: 0.5 * (1.0 + np.tanh(_gelu_inner(x)))
                          + x * (0.134145 * x ** 2 + 1.0) / np.cosh(_gelu_inner(x)) ** 2 / np.sqrt(2.0 * np.pi))
    if function_type == t.GAUSSIAN:
        return lambda x: np.exp(-x ** 2 / 2.0), lambda x: -x * np.exp(-x ** 2 / 2.0)
    if function_type == t.SINACT:
        return (lambda x: np.where(x < -0.5 * np.pi, -1.0, np.where(x > 0.5 * np.pi, 1.0, np.sin(x))),
                lambda x: np.where((x < -0.5 * np.pi) | (x > 0.5 * np.pi), 0.0, np.cos(x)))
    if function_type == t.SOFTMAX:
        return _softmax, np.ones_like
    raise ValueError(f"No built-in definition for unary function {function_type.value}")

def _softmax(x):
    e = np.exp(x - np.max(x, axis=0, keepdims=True))
    return e / np.sum(e, axis=0, keepdims=True)

class UnaryFunction:
    """Elementwise function paired with its derivative.

    SOFTMAX is the exception: it normalizes each column and its gradient is
    the full Jacobian product rather than an elementwise derivative.
    """

    def __init__(self, function_type: UnaryFunctionType, **params):
        if function_type == UnaryFunctionType.CUSTOM:
            raise ValueError("Use UnaryFunction.custom() to define a custom function")
        self.function_type = function_type
        self.params = _resolve_params(UNARY_DEFAULTS.get(function_type, {}), params, function_type.value)
        self.function, self.derivative = _unary_pair(function_type, self.params)

    @staticmethod
    def custom(function: ArrayFn, derivative: ArrayFn, name: str = 'custom') -> 'UnaryFunction':
        instance = UnaryFunction.__new__(UnaryFunction)
        instance.function_type = UnaryFunctionType.CUSTOM
        instance.params = {'name': name}
        instance.function = function
        instance.derivative = derivative
        return instance

    @property
    def name(self) -> str:
        if self.function_type == UnaryFunctionType.CUSTOM:
            return self.params['name']
        return self.function_type.value

    def apply_function(self, value: Matrix) -> Matrix:
        return Matrix(self.function(value.value))

    def apply_gradient(self, value: Matrix, gradient: Matrix) -> Matrix:
        """Chain rule: gradient flowing into `value` given the output gradient"""
        if self.function_type == UnaryFunctionType.SOFTMAX:
            s = _softmax(value.value)
            g = gradient.value
            return Matrix(s * (g - np.sum(s * g, axis=0, keepdims=True)))
        return Matrix(gradient.value * self.derivative(value.value))

    def __repr__(self):
        return f"UnaryFunction({self.name})"

def _binary_pair(function_type: BinaryFunctionType, p: Dict[str, float]) -> Tuple[BiArrayFn, BiArrayFn]:
    t = BinaryFunctionType
    if function_type == t.POW:
        return np.power, lambda v, c: c * np.power(v, c - 1.0)
    if function_type == t.MEAN_SQUARED_ERROR:
        return lambda v, c: 0.5 * (v - c) ** 2, lambda v, c: v - c
    if function_type == t.MEAN_SQUARED_LOGARITHMIC_ERROR:
        return (lambda v, c: (np.log(c + 1.0) - np.log(v + 1.0)) ** 2,
                lambda v, c: -2.0 * (np.log(c + 1.0) - np.log(v + 1.0)) / (v + 1.0))
    if function_type == t.MEAN_ABSOLUTE_ERROR:
        return lambda v, c: np.abs(v - c), lambda v, c: np.sign(v - c)
    if function_type == t.MEAN_ABSOLUTE_PERCENTAGE_ERROR:
        return (lambda v, c: 100.0 * np.abs((v - c) / c),
                lambda v, c: 100.0 * np.sign(v - c) / np.abs(c))
    if function_type == t.CROSS_ENTROPY:
        return lambda v, c: -(c * np.log(v)), lambda v, c: -(c / v)
    if function_type == t.KULLBACK_LEIBLER:
        return lambda v, c: c * np.log(c) - c * np.log(v), lambda v, c: -(c / v)
    if function_type == t.NEGATIVE_LOG_LIKELIHOOD:
        return lambda v, c: -np.log(v), lambda v, c: -1.0 / v
    if function_type == t.POISSON:
        return lambda v, c: v - c * np.log(v), lambda v, c: 1.0 - c / v
    if function_type == t.HINGE:
        margin = p['margin']
        return (lambda v, c: np.maximum(0.0, margin - c * v),
                lambda v, c: np.where(margin - c * v <= 0.0, 0.0, -c))
    if function_type == t.SQUARED_HINGE:
        return (lambda v, c: np.where(1.0 - c * v <= 0.0, 0.0, (1.0 - c * v) ** 2),
                lambda v, c: np.where(1.0 - c * v <= 0.0, 0.0, -2.0 * c * (1.0 - c * v)))
    if function_type == t.HUBER:
        delta = p['delta']
        return (lambda v, c: np.where(np.abs(v - c) <= delta, 0.5 * (v - c) ** 2,
                                      delta * np.abs(v - c) - 0.5 * delta ** 2),
                lambda v, c: np.where(np.abs(v - c) <= delta, v - c, delta * np.sign(v - c)))
    if function_type == t.MAX:
        return np.maximum, lambda v, c: np.where(v >= c, 1.0, 0.0)
    if function_type == t.MIN:
        return np.minimum, lambda v, c: np.where(v <= c, 1.0, 0.0)
    raise ValueError(f"No built-in definition for binary function {function_type.value}")

class BinaryFunction:
    """Elementwise function of a value and a constant (target) operand.

    Only the first operand is differentiated, the second one is treated as a
    fixed target such as labels of a loss function.
    """

    def __init__(self, function_type: BinaryFunctionType, **params):
        if function_type == BinaryFunctionType.CUSTOM:
            raise ValueError("Use BinaryFunction.custom() to define a custom function")
        self.function_type = function_type
        self.params = _resolve_params(BINARY_DEFAULTS.get(function_type, {}), params, function_type.value)
        self.function, self.derivative = _binary_pair(function_type, self.params)

    @staticmethod
    def custom(function: BiArrayFn, derivative: BiArrayFn, name: str = 'custom') -> 'BinaryFunction':
        instance = BinaryFunction.__new__(BinaryFunction)
        instance.function_type = BinaryFunctionType.CUSTOM
        instance.params = {'name': name}
        instance.function = function
        instance.derivative = derivative
        return instance

    @property
    def name(self) -> str:
        if self.function_type == BinaryFunctionType.CUSTOM:
            return self.params['name']
        return self.function_type.value

    def apply_function(self, first: Matrix, second: Matrix) -> Matrix:
        return Matrix(self.function(first.value, second.value))

    def apply_gradient(self, first: Matrix, second: Matrix, gradient: Matrix) -> Matrix:
        return Matrix(gradient.value * self.derivative(first.value, second.value))

    def __repr__(self):
        return f"BinaryFunction({self.name})"
