# Copyright (c) 2024 Jake Ehrlich
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import itertools
import numbers
import numpy as np # type: ignore
from typing import Any, Optional, Tuple

class MatrixError(ValueError):
    """Raised when matrix operands do not fit the requested operation"""
    pass

_matrix_ids = itertools.count()

class Matrix:
    """Dense 2D operand consumed by the procedure graph.

    Every matrix gets a process-wide unique `matrix_id` that the graph uses as
    its identity. A matrix attached to a ProcedureFactory records each
    arithmetic operation it takes part in as an expression of the procedure
    currently being built.
    """

    def __init__(self, value: Any, name: Optional[str] = None):
        value = np.array(value, dtype=np.float64)
        if value.ndim == 0:
            value = value.reshape(1, 1)
        elif value.ndim == 1:
            value = value.reshape(-1, 1)
        elif value.ndim != 2:
            raise MatrixError(f"Matrix must be 2D, got shape {value.shape}")
        self.value: np.ndarray = value
        self.name = name
        self.matrix_id = next(_matrix_ids)
        self.procedure_factory = None

    @staticmethod
    def zeros(rows: int, cols: int, name: Optional[str] = None) -> 'Matrix':
        return Matrix(np.zeros((rows, cols)), name)

    @staticmethod
    def ones(rows: int, cols: int, name: Optional[str] = None) -> 'Matrix':
        return Matrix(np.ones((rows, cols)), name)

    @staticmethod
    def random(rows: int, cols: int, scale: float = 1.0, rng: Optional[np.random.Generator] = None,
               name: Optional[str] = None) -> 'Matrix':
        rng = rng if rng is not None else np.random.default_rng()
        return Matrix(rng.normal(0.0, scale, (rows, cols)), name)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.value.shape

    @property
    def rows(self) -> int:
        return self.value.shape[0]

    @property
    def cols(self) -> int:
        return self.value.shape[1]

    def copy(self) -> 'Matrix':
        return Matrix(self.value, self.name)

    def get_value(self, row: int, col: int) -> float:
        return float(self.value[row, col])

    def set_value(self, row: int, col: int, value: float) -> None:
        self.value[row, col] = value

    def __repr__(self):
        label = f", name={self.name!r}" if self.name is not None else ""
        return f"Matrix({self.value.tolist()!r}{label})"

    # Procedure factory attachment

    def set_procedure_factory(self, procedure_factory) -> None:
        self.procedure_factory = procedure_factory

    def get_procedure_factory(self):
        return self.procedure_factory

    def remove_procedure_factory(self) -> None:
        self.procedure_factory = None

    def _record(self, other: Optional['Matrix'], result: 'Matrix', operation) -> None:
        factory = self.procedure_factory
        other_factory = other.procedure_factory if other is not None else None
        if factory is None and other_factory is None:
            return
        if factory is not None and other_factory is not None and factory is not other_factory:
            raise MatrixError("This and other matrices have conflicting procedure factories")
        if factory is None:
            factory = other_factory
        if other is None:
            factory.add_expression(self, result, operation)
        else:
            factory.add_expression(self, other, result, operation)
        result.set_procedure_factory(factory)

    # Arithmetic

    def _check_same_shape(self, other: 'Matrix', operation: str) -> None:
        if self.shape != other.shape:
            raise MatrixError(f"Cannot {operation} matrices of shapes {self.shape} and {other.shape}")

    def _binary(self, other: Any, operation: str, kernel) -> 'Matrix':
        from tracegrad.graph import ExpressionType
        other = _ensure_matrix(other, self.shape)
        self._check_same_shape(other, operation)
        result = Matrix(kernel(self.value, other.value))
        self._record(other, result, ExpressionType[operation.upper()])
        return result

    def add(self, other: Any) -> 'Matrix':
        return self._binary(other, 'add', np.add)

    def subtract(self, other: Any) -> 'Matrix':
        return self._binary(other, 'sub', np.subtract)

    def multiply(self, other: Any) -> 'Matrix':
        return self._binary(other, 'mul', np.multiply)

    def divide(self, other: Any) -> 'Matrix':
        return self._binary(other, 'div', np.divide)

    def dot(self, other: 'Matrix') -> 'Matrix':
        from tracegrad.graph import ExpressionType
        if not isinstance(other, Matrix):
            raise MatrixError(f"Cannot dot matrix with {type(other).__name__}")
        if self.cols != other.rows:
            raise MatrixError(f"Cannot dot matrices of shapes {self.shape} and {other.shape}")
        result = Matrix(self.value @ other.value)
        self._record(other, result, ExpressionType.DOT)
        return result

    def apply(self, unary_function) -> 'Matrix':
        result = unary_function.apply_function(self)
        self._record(None, result, unary_function)
        return result

    def apply_bi(self, other: Any, binary_function) -> 'Matrix':
        other = _ensure_matrix(other, self.shape)
        self._check_same_shape(other, binary_function.name)
        result = binary_function.apply_function(self, other)
        self._record(other, result, binary_function)
        return result

    def T(self) -> 'Matrix':
        return Matrix(self.value.T)

    def transpose(self) -> 'Matrix':
        return self.T()

    def power(self, exponent: float) -> 'Matrix':
        return Matrix(np.power(self.value, exponent))

    def sum(self) -> float:
        return float(np.sum(self.value))

    # In-place accumulation, never recorded

    def add_into(self, other: 'Matrix') -> 'Matrix':
        self._check_same_shape(other, 'add')
        self.value += other.value
        return self

    def subtract_into(self, other: 'Matrix') -> 'Matrix':
        self._check_same_shape(other, 'subtract')
        self.value -= other.value
        return self

    def __add__(self, other):
        return self.add(other)

    def __radd__(self, other):
        return _ensure_matrix(other, self.shape).add(self)

    def __sub__(self, other):
        return self.subtract(other)

    def __rsub__(self, other):
        return _ensure_matrix(other, self.shape).subtract(self)

    def __mul__(self, other):
        return self.multiply(other)

    def __rmul__(self, other):
        return _ensure_matrix(other, self.shape).multiply(self)

    def __truediv__(self, other):
        return self.divide(other)

    def __rtruediv__(self, other):
        return _ensure_matrix(other, self.shape).divide(self)

    def __matmul__(self, other):
        return self.dot(other)

def _ensure_matrix(x: Any, shape: Tuple[int, int]) -> Matrix:
    if isinstance(x, Matrix):
        return x
    if isinstance(x, (numbers.Real, np.number)):
        return Matrix(np.full(shape, float(x)))
    if isinstance(x, np.ndarray):
        return Matrix(x)
    raise MatrixError(f"Cannot use {type(x).__name__} as a matrix operand")
