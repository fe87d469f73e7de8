# Copyright (c) 2024 Jake Ehrlich
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple
from tracegrad.functions import BinaryFunction, UnaryFunction
from tracegrad.logger import get_logger
from tracegrad.tensor import Matrix

logger = get_logger(__name__)

class GraphError(ValueError):
    """Raised when a procedure cannot be built or evaluated"""
    pass

@dataclass(eq=False)
class Node:
    """Graph handle of one matrix identity with per-index value and gradient slots.

    Constant nodes keep a single slot (index 0) that every index reads, so a
    shared weight sees all indices and accumulates their gradients.
    """
    node_id: int
    constant: bool
    rows: int
    cols: int
    procedure_id: int = 0
    expression_id: int = 0
    values: Dict[int, Matrix] = dataclasses.field(default_factory=dict)
    gradients: Dict[int, Matrix] = dataclasses.field(default_factory=dict)

    def _slot(self, index: int) -> int:
        return 0 if self.constant else index

    def get_empty_matrix(self) -> Matrix:
        return Matrix.zeros(self.rows, self.cols)

    def get_value(self, index: int) -> Optional[Matrix]:
        return self.values.get(self._slot(index))

    def set_value(self, index: int, matrix: Matrix) -> None:
        self.values[self._slot(index)] = matrix

    def get_gradient(self, index: int) -> Optional[Matrix]:
        return self.gradients.get(self._slot(index))

    def set_gradient(self, index: int, gradient: Matrix) -> None:
        self.gradients[self._slot(index)] = gradient

    def update_gradient(self, index: int, gradient: Matrix, add: bool = True) -> None:
        """Accumulates gradient into the slot at index, subtracting when add is False"""
        current = self.get_gradient(index)
        if current is None:
            current = self.get_empty_matrix()
            self.set_gradient(index, current)
        if add:
            current.add_into(gradient)
        else:
            current.subtract_into(gradient)

    def reset(self, index: Optional[int] = None) -> None:
        if index is None:
            if not self.constant:
                self.values.clear()
            self.gradients.clear()
        else:
            # slot 0 of a constant holds the sum over all indices and only
            # goes away with index 0 or a full reset
            if not self.constant:
                self.values.pop(index, None)
            self.gradients.pop(index, None)

    def indices(self) -> List[int]:
        return sorted(self.values.keys())

class NodeRegister:
    """Arena of nodes with the mapping from matrix identity to node.

    The register outlives single builds so a matrix recurring in a later
    build resolves to the node, and creation expression id, it got first.
    """

    def __init__(self):
        self.nodes: List[Node] = []
        self.node_ids: Dict[int, int] = {}
        self.matrices: Dict[int, Matrix] = {}

    def define_node(self, matrix: Matrix, constant: bool, procedure_id: int, expression_id: int) -> Node:
        node_id = self.node_ids.get(matrix.matrix_id)
        if node_id is not None:
            return self.nodes[node_id]
        node = Node(len(self.nodes), constant, matrix.rows, matrix.cols, procedure_id, expression_id)
        if constant:
            node.set_value(0, matrix)
        self.nodes.append(node)
        self.node_ids[matrix.matrix_id] = node.node_id
        self.matrices[matrix.matrix_id] = matrix
        logger.debug("define_node: matrix=%d node=%d constant=%s procedure=%d expression=%d",
                     matrix.matrix_id, node.node_id, constant, procedure_id, expression_id)
        return node

    def contains(self, matrix: Matrix) -> bool:
        return matrix.matrix_id in self.node_ids

    def get_node(self, matrix: Matrix) -> Node:
        node_id = self.node_ids.get(matrix.matrix_id)
        if node_id is None:
            raise GraphError(f"No node registered for matrix {matrix.matrix_id}")
        return self.nodes[node_id]

    def get_expression_id(self, node: Node) -> int:
        return node.expression_id

    def get_procedure_id(self, node: Node) -> int:
        return node.procedure_id

    def remove_procedure_factory(self) -> None:
        for matrix in self.matrices.values():
            matrix.remove_procedure_factory()

    def __len__(self) -> int:
        return len(self.nodes)

class ExpressionType(Enum):
    UNIFUN = 'unifun'
    BIFUN = 'bifun'
    ADD = 'add'
    SUB = 'sub'
    DOT = 'dot'
    MUL = 'mul'
    DIV = 'div'

FUNCTION_TYPES = (ExpressionType.UNIFUN, ExpressionType.BIFUN)

@dataclass(frozen=True)
class Expression:
    """One recorded operation; arguments and result are indices into the node arena"""
    expression_id: int
    expression_type: ExpressionType
    arg1: int
    arg2: Optional[int]
    result: int
    unary_function: Optional[UnaryFunction] = None
    binary_function: Optional[BinaryFunction] = None

    def __post_init__(self):
        if self.result == self.arg1 or self.result == self.arg2:
            raise GraphError(f"Expression {self.expression_id} uses its result as an argument")
        if self.expression_type != ExpressionType.UNIFUN and self.arg2 is None:
            raise GraphError(f"Expression {self.expression_id} of type {self.expression_type.value} needs two arguments")

    @staticmethod
    def unary(expression_id: int, arg1: int, result: int, unary_function: UnaryFunction) -> 'Expression':
        return Expression(expression_id, ExpressionType.UNIFUN, arg1, None, result,
                          unary_function=unary_function)

    @staticmethod
    def binary(expression_id: int, arg1: int, arg2: int, result: int,
               binary_function: BinaryFunction) -> 'Expression':
        return Expression(expression_id, ExpressionType.BIFUN, arg1, arg2, result,
                          binary_function=binary_function)

    @staticmethod
    def structural(expression_id: int, arg1: int, arg2: int, result: int,
                   expression_type: ExpressionType) -> 'Expression':
        if not isinstance(expression_type, ExpressionType) or expression_type in FUNCTION_TYPES:
            raise GraphError(f"Expression cannot be of function type {expression_type}")
        return Expression(expression_id, expression_type, arg1, arg2, result)

    def arguments(self) -> Tuple[int, ...]:
        if self.arg2 is None:
            return (self.arg1,)
        return (self.arg1, self.arg2)

    def reset_expression(self, nodes: List[Node], index: Optional[int] = None) -> None:
        for node_id in self.arguments() + (self.result,):
            nodes[node_id].reset(index)

    # Forward evaluation

    def _argument_values(self, nodes: List[Node], index: int) -> Tuple[Matrix, ...]:
        values = tuple(nodes[node_id].get_value(index) for node_id in self.arguments())
        if any(value is None for value in values):
            raise GraphError(f"Arguments for {self.expression_type.value} operation not defined at index {index}")
        return values

    def calculate_expression(self, nodes: List[Node], index: int) -> None:
        visitor = getattr(self, f'_forward_{self.expression_type.value}')
        nodes[self.result].set_value(index, visitor(*self._argument_values(nodes, index)))

    def _forward_unifun(self, arg1: Matrix) -> Matrix:
        assert self.unary_function is not None
        return self.unary_function.apply_function(arg1)

    def _forward_bifun(self, arg1: Matrix, arg2: Matrix) -> Matrix:
        assert self.binary_function is not None
        return self.binary_function.apply_function(arg1, arg2)

    def _forward_add(self, arg1: Matrix, arg2: Matrix) -> Matrix:
        return arg1.add(arg2)

    def _forward_sub(self, arg1: Matrix, arg2: Matrix) -> Matrix:
        return arg1.subtract(arg2)

    def _forward_dot(self, arg1: Matrix, arg2: Matrix) -> Matrix:
        return arg1.dot(arg2)

    def _forward_mul(self, arg1: Matrix, arg2: Matrix) -> Matrix:
        return arg1.multiply(arg2)

    def _forward_div(self, arg1: Matrix, arg2: Matrix) -> Matrix:
        return arg1.divide(arg2)

    # Backward evaluation

    def calculate_gradient(self, nodes: List[Node], index: int) -> None:
        gradient = nodes[self.result].get_gradient(index)
        if gradient is None:
            raise GraphError(f"Result gradient of expression {self.expression_id} not defined at index {index}")
        visitor = getattr(self, f'_backward_{self.expression_type.value}')
        visitor(nodes, index, gradient, *self._argument_values(nodes, index))

    def _backward_unifun(self, nodes: List[Node], index: int, gradient: Matrix, arg1: Matrix) -> None:
        assert self.unary_function is not None
        nodes[self.arg1].update_gradient(index, self.unary_function.apply_gradient(arg1, gradient))

    def _backward_bifun(self, nodes: List[Node], index: int, gradient: Matrix, arg1: Matrix, arg2: Matrix) -> None:
        assert self.binary_function is not None
        nodes[self.arg1].update_gradient(index, self.binary_function.apply_gradient(arg1, arg2, gradient))

    def _backward_add(self, nodes: List[Node], index: int, gradient: Matrix, arg1: Matrix, arg2: Matrix) -> None:
        nodes[self.arg1].update_gradient(index, gradient)
        nodes[self.arg2].update_gradient(index, gradient)

    def _backward_sub(self, nodes: List[Node], index: int, gradient: Matrix, arg1: Matrix, arg2: Matrix) -> None:
        nodes[self.arg1].update_gradient(index, gradient)
        nodes[self.arg2].update_gradient(index, gradient, add=False)

    def _backward_dot(self, nodes: List[Node], index: int, gradient: Matrix, arg1: Matrix, arg2: Matrix) -> None:
        nodes[self.arg1].update_gradient(index, gradient.dot(arg2.T()))
        nodes[self.arg2].update_gradient(index, arg1.T().dot(gradient))

    def _backward_mul(self, nodes: List[Node], index: int, gradient: Matrix, arg1: Matrix, arg2: Matrix) -> None:
        nodes[self.arg1].update_gradient(index, gradient.multiply(arg2))
        nodes[self.arg2].update_gradient(index, arg1.multiply(gradient))

    def _backward_div(self, nodes: List[Node], index: int, gradient: Matrix, arg1: Matrix, arg2: Matrix) -> None:
        nodes[self.arg1].update_gradient(index, gradient.divide(arg2))
        nodes[self.arg2].update_gradient(index, gradient.multiply(arg1).divide(arg2.power(2)), add=False)

    def render(self, node_name=lambda node_id: f"n{node_id}") -> str:
        if self.expression_type == ExpressionType.UNIFUN:
            assert self.unary_function is not None
            op = self.unary_function.name
        elif self.expression_type == ExpressionType.BIFUN:
            assert self.binary_function is not None
            op = self.binary_function.name
        else:
            op = self.expression_type.value
        args = ", ".join(node_name(node_id) for node_id in self.arguments())
        return f"{node_name(self.result)} = {op}({args})"

    def __str__(self) -> str:
        return self.render()

@dataclass
class NodeLink:
    """Carries a result of one index into an argument of the next index.

    from_node produces the value at index - 1 that to_node consumes at index;
    gradients flow back the same way, from to_node at index + 1 into
    from_node at index.
    """
    from_node: int
    to_node: int
    previous_value: Optional[Matrix] = dataclasses.field(default=None, compare=False, repr=False)
    previous_gradient: Optional[Matrix] = dataclasses.field(default=None, compare=False, repr=False)

    def __hash__(self):
        return hash((self.from_node, self.to_node))

    def reset(self) -> None:
        self.previous_value = None
        self.previous_gradient = None

    def update_expression(self, nodes: List[Node], index: int) -> None:
        from_value = nodes[self.from_node].get_value(index - 1)
        if from_value is not None:
            value = from_value
        elif self.previous_value is not None:
            value = self.previous_value
        else:
            value = nodes[self.from_node].get_empty_matrix()
        nodes[self.to_node].set_value(index, value)
        self.previous_value = from_value

    def update_gradient(self, nodes: List[Node], index: int) -> None:
        to_gradient = nodes[self.to_node].get_gradient(index + 1)
        if to_gradient is not None:
            gradient = to_gradient
        elif self.previous_gradient is not None:
            gradient = self.previous_gradient
        else:
            gradient = nodes[self.to_node].get_empty_matrix()
        nodes[self.from_node].update_gradient(index, gradient)
        self.previous_gradient = to_gradient

def unique_links(links: Iterable[NodeLink]) -> List[NodeLink]:
    seen = set()
    result = []
    for link in links:
        key = (link.from_node, link.to_node)
        if key not in seen:
            seen.add(key)
            result.append(link)
    return result
