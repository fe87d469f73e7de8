# Copyright (c) 2024 Jake Ehrlich
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import dataclasses
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Union
from tracegrad.functions import BinaryFunction, UnaryFunction
from tracegrad.graph import (Expression, ExpressionType, GraphError, Node, NodeLink,
                             NodeRegister, unique_links)
from tracegrad.logger import get_logger
from tracegrad.tensor import Matrix

logger = get_logger(__name__)

@dataclass
class ProcedureData:
    """Working state of a single build"""
    expressions: List[Expression] = dataclasses.field(default_factory=list)
    gradient_expressions: List[Expression] = dataclasses.field(default_factory=list)
    reverse_expressions: Dict[int, Expression] = dataclasses.field(default_factory=dict) # result node -> expression
    links: List[NodeLink] = dataclasses.field(default_factory=list)
    input_matrix: Optional[Matrix] = None
    input_node: Optional[int] = None
    output_node: Optional[int] = None

@dataclass
class GraphBuilder:
    """Everything a ProcedureFactory knows: the previous and the in-progress build,
    the counters and the node register shared by all builds."""
    register: NodeRegister = dataclasses.field(default_factory=NodeRegister)
    previous: Optional[ProcedureData] = None
    current: Optional[ProcedureData] = None
    procedure_id: int = 0
    expression_id: int = 0
    building: bool = False
    registered: Dict[int, Matrix] = dataclasses.field(default_factory=dict)
    registered_nodes: Dict[int, int] = dataclasses.field(default_factory=dict) # matrix id -> node id

class Procedure:
    """Compiled forward and backward plan, replayable at any index.

    Only the per-index slots of its nodes change after construction.
    """

    def __init__(self, nodes: List[Node], input_node: Node, output_node: Node,
                 expressions: Iterable[Expression], gradient_expressions: Iterable[Expression],
                 links: Iterable[NodeLink], registered_nodes: Dict[int, int]):
        self.nodes = nodes
        self.input_node = input_node
        self.output_node = output_node
        self.expressions = tuple(expressions)
        self.gradient_expressions = tuple(gradient_expressions)
        self.links = tuple(links)
        self.registered_nodes = dict(registered_nodes)

    @property
    def size(self) -> int:
        return len(self.expressions)

    def __len__(self) -> int:
        return len(self.expressions)

    def get_expression(self, expression_id: int) -> Expression:
        return self.expressions[expression_id]

    def get_node(self, matrix: Matrix) -> Optional[Node]:
        node_id = self.registered_nodes.get(matrix.matrix_id)
        if node_id is None:
            return None
        return self.nodes[node_id]

    def reset(self, index: Optional[int] = None) -> None:
        for expression in self.expressions:
            expression.reset_expression(self.nodes, index)

    def has_dependencies(self) -> bool:
        return len(self.links) > 0

    def reset_dependencies(self) -> None:
        for link in self.links:
            link.reset()

    def calculate_expression(self, index: int, input_matrix: Matrix) -> Node:
        for link in self.links:
            link.update_expression(self.nodes, index)
        self.input_node.set_value(index, input_matrix)
        for expression in self.expressions:
            expression.calculate_expression(self.nodes, index)
        return self.output_node

    def calculate_gradient(self, index: int, output_gradient: Matrix) -> Node:
        # Seeded with a copy, links and shared consumers accumulate into it
        self.output_node.set_gradient(index, output_gradient.copy())
        for link in self.links:
            link.update_gradient(self.nodes, index)
        for expression in self.gradient_expressions:
            expression.calculate_gradient(self.nodes, index)
        return self.input_node

    def render(self, indent: int = 0) -> str:
        def node_name(node_id: int) -> str:
            return f"c{node_id}" if self.nodes[node_id].constant else f"v{node_id}"
        result = " " * indent + "{" + node_name(self.input_node.node_id) + " |\n"
        indent += 2
        for link in self.links:
            result += " " * indent + f"{node_name(link.to_node)} <- {node_name(link.from_node)}[-1]\n"
        for expression in self.expressions:
            result += " " * indent + expression.render(node_name) + "\n"
        result += " " * indent + "return " + node_name(self.output_node.node_id) + "\n"
        result += " " * (indent - 2) + "}"
        return result

    def __str__(self) -> str:
        return self.render()

Operation = Union[UnaryFunction, BinaryFunction, ExpressionType]

class ProcedureFactory:
    """Records matrix operations and compiles them into Procedures.

    A build starts with new_procedure(input) and ends with end_procedure(output).
    The first build of a factory only probes the shape of the graph and
    returns None; every later build is compared with the one before it to
    find values carried from one index to the next.
    """

    def __init__(self, builder: Optional[GraphBuilder] = None):
        self.builder = builder if builder is not None else GraphBuilder()

    @property
    def register(self) -> NodeRegister:
        return self.builder.register

    def register_matrix(self, matrices: Union[Matrix, Iterable[Matrix]], attach: bool = True) -> None:
        """Marks matrices whose nodes compiled procedures expose through get_node"""
        if isinstance(matrices, Matrix):
            matrices = [matrices]
        for matrix in matrices:
            self.builder.registered[matrix.matrix_id] = matrix
            if attach:
                matrix.set_procedure_factory(self)

    def new_procedure(self, input_matrix: Matrix) -> None:
        builder = self.builder
        if builder.building:
            raise GraphError("Cannot start a new procedure while another one is being built")
        builder.expression_id = 0
        builder.previous = builder.current
        builder.current = ProcedureData(input_matrix=input_matrix)
        builder.building = True
        input_matrix.set_procedure_factory(self)
        logger.debug("new_procedure: procedure=%d input=%d", builder.procedure_id, input_matrix.matrix_id)

    def _require_building(self) -> ProcedureData:
        if not self.builder.building or self.builder.current is None:
            raise GraphError("No procedure is being built, call new_procedure first")
        return self.builder.current

    def _define_node(self, matrix: Matrix, result: bool) -> int:
        builder = self.builder
        data = self._require_building()
        is_input = matrix is data.input_matrix
        node = builder.register.define_node(matrix, not (is_input or result),
                                            builder.procedure_id, builder.expression_id)
        if is_input:
            data.input_node = node.node_id
        if matrix.matrix_id in builder.registered:
            builder.registered_nodes[matrix.matrix_id] = node.node_id
        return node.node_id

    def add_expression(self, arg1: Matrix, *args) -> Expression:
        """Records one operation.

        Accepted forms:
            add_expression(arg1, result, unary_function)
            add_expression(arg1, arg2, result, binary_function)
            add_expression(arg1, arg2, result, expression_type)
        """
        data = self._require_building()
        if len(args) == 2 and isinstance(args[1], UnaryFunction):
            result, unary_function = args
            node1 = self._define_node(arg1, False)
            result_node = self._define_node(result, True)
            expression = Expression.unary(self.builder.expression_id, node1, result_node, unary_function)
        elif len(args) == 3:
            arg2, result, operation = args
            node1 = self._define_node(arg1, False)
            node2 = self._define_node(arg2, False)
            result_node = self._define_node(result, True)
            if isinstance(operation, BinaryFunction):
                expression = Expression.binary(self.builder.expression_id, node1, node2, result_node, operation)
            else:
                expression = Expression.structural(self.builder.expression_id, node1, node2, result_node, operation)
        else:
            raise GraphError(f"Unsupported expression arguments: {args!r}")
        self.builder.expression_id += 1
        data.expressions.append(expression)
        data.reverse_expressions[expression.result] = expression
        return expression

    def end_procedure(self, output_matrix: Matrix) -> Optional[Procedure]:
        builder = self.builder
        data = self._require_building()
        if not builder.register.contains(output_matrix):
            raise GraphError("Setting of output node failed. No node corresponding output matrix is found.")
        data.output_node = builder.register.get_node(output_matrix).node_id
        self._define_gradient_path(data)
        builder.building = False
        logger.debug("end_procedure: procedure=%d expressions=%d gradient_expressions=%d",
                     builder.procedure_id, len(data.expressions), len(data.gradient_expressions))
        first_build = builder.procedure_id == 0
        builder.procedure_id += 1
        if first_build:
            return None
        assert builder.previous is not None
        self._analyze_dependencies(builder.previous, data)
        if data.input_node is None:
            raise GraphError("Input matrix is not used by any expression of the procedure")
        self._check_unfilled_arguments(data)
        nodes = builder.register.nodes
        procedure = Procedure(nodes, nodes[data.input_node], nodes[data.output_node],
                              data.expressions, data.gradient_expressions, data.links,
                              builder.registered_nodes)
        builder.register.remove_procedure_factory()
        for matrix in builder.registered.values():
            matrix.remove_procedure_factory()
        return procedure

    def _check_unfilled_arguments(self, data: ProcedureData) -> None:
        """Raises if some argument would never hold a value during replay.

        Such an argument is a result of an earlier build that is neither
        produced by this build nor carried by a link, as in `h = h + x`.
        """
        nodes = self.builder.register.nodes
        filled = {expression.result for expression in data.expressions}
        filled.update(link.to_node for link in data.links)
        filled.add(data.input_node)
        for expression in data.expressions:
            for node_id in expression.arguments():
                if not nodes[node_id].constant and node_id not in filled:
                    raise GraphError(f"Argument node {node_id} of expression {expression.expression_id} "
                                     "comes from an earlier build and is not carried by any link")

    def _define_gradient_path(self, data: ProcedureData) -> None:
        """Collects the expressions the output depends on, last created first.

        Creation order is a topological order of the trace, so descending
        expression ids guarantee every consumer of a node has contributed its
        gradient before the node's own expression runs.
        """
        assert data.output_node is not None
        seen = set()
        reachable = []
        stack = [data.output_node]
        while stack:
            expression = data.reverse_expressions.get(stack.pop())
            if expression is None or expression.expression_id in seen:
                continue
            seen.add(expression.expression_id)
            reachable.append(expression)
            stack.extend(expression.arguments())
        data.gradient_expressions = sorted(reachable, key=lambda e: e.expression_id, reverse=True)

    def _analyze_dependencies(self, previous: ProcedureData, current: ProcedureData) -> None:
        current.links = []
        if len(previous.expressions) != len(current.expressions):
            logger.warning("Builds differ in size (%d and %d expressions), no dependencies recorded",
                           len(previous.expressions), len(current.expressions))
            return
        links = []
        for previous_expression, current_expression in zip(previous.expressions, current.expressions):
            for previous_arg, current_arg in zip(previous_expression.arguments(), current_expression.arguments()):
                link = self._analyze_dependency(current, previous_arg, current_arg)
                if link is not None:
                    links.append(link)
        current.links = unique_links(links)
        logger.debug("analyze_dependencies: %d links", len(current.links))

    def _analyze_dependency(self, current: ProcedureData, previous_arg: int, current_arg: int) -> Optional[NodeLink]:
        register = self.builder.register
        previous_expression_id = register.get_expression_id(register.nodes[previous_arg])
        current_expression_id = register.get_expression_id(register.nodes[current_arg])
        if previous_expression_id == current_expression_id:
            return None
        # The carried value was produced by expression current_expression_id of an
        # earlier build; its congruent expression in this build produces it now.
        if current_expression_id >= len(current.expressions):
            logger.debug("analyze_dependency: node %d created outside this trace", current_arg)
            return None
        from_node = current.expressions[current_expression_id].result
        if from_node == current_arg:
            return None
        logger.debug("analyze_dependency: link %d -> %d", from_node, current_arg)
        return NodeLink(from_node, current_arg)
