# Copyright (c) 2024 Jake Ehrlich
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import numpy as np # type: ignore
import pytest
from tracegrad.functions import BinaryFunction, BinaryFunctionType, UnaryFunction, UnaryFunctionType
from tracegrad.graph import Expression, ExpressionType, GraphError, Node, NodeLink, NodeRegister, unique_links
from tracegrad.tensor import Matrix

def test_node_slots():
    node = Node(0, False, 2, 1)
    assert node.get_value(0) is None
    node.set_value(0, Matrix([1.0, 2.0]))
    node.set_value(3, Matrix([3.0, 4.0]))
    assert node.indices() == [0, 3]
    assert node.get_value(3).get_value(1, 0) == 4.0

    node.update_gradient(3, Matrix([1.0, 1.0]))
    node.update_gradient(3, Matrix([2.0, 0.5]))
    node.update_gradient(3, Matrix([1.0, 1.0]), add=False)
    assert np.allclose(node.get_gradient(3).value, [[2.0], [0.5]])

    node.reset(3)
    assert node.indices() == [0]
    assert node.get_gradient(3) is None
    node.reset()
    assert node.indices() == []
    assert node.get_empty_matrix().shape == (2, 1)

def test_constant_node_shares_slot():
    weight = Matrix([[1.0, 2.0]])
    node = Node(0, True, 1, 2)
    node.set_value(0, weight)
    assert node.get_value(7) is weight

    node.update_gradient(1, Matrix([[1.0, 0.0]]))
    node.update_gradient(5, Matrix([[0.0, 3.0]]))
    assert np.allclose(node.get_gradient(0).value, [[1.0, 3.0]])

    node.reset(5)
    assert node.get_value(0) is weight
    assert np.allclose(node.get_gradient(0).value, [[1.0, 3.0]])
    node.reset(0)
    assert node.get_gradient(0) is None
    node.update_gradient(2, Matrix([[1.0, 1.0]]))

    node.reset()
    assert node.get_value(0) is weight
    assert node.get_gradient(0) is None

def test_update_gradient_does_not_alias():
    node = Node(0, False, 1, 1)
    gradient = Matrix([2.0])
    node.update_gradient(0, gradient)
    node.update_gradient(0, gradient)
    assert gradient.get_value(0, 0) == 2.0
    assert node.get_gradient(0).get_value(0, 0) == 4.0

def test_register():
    register = NodeRegister()
    a = Matrix([1.0])
    b = Matrix([[1.0, 2.0]])
    node_a = register.define_node(a, True, 0, 0)
    node_b = register.define_node(b, False, 0, 1)
    assert register.define_node(a, False, 3, 5) is node_a
    assert len(register) == 2
    assert register.contains(b)
    assert not register.contains(Matrix([1.0]))
    assert register.get_node(b) is node_b
    assert (node_b.rows, node_b.cols) == (1, 2)
    assert register.get_expression_id(node_b) == 1
    assert register.get_procedure_id(node_a) == 0
    assert node_a.get_value(0) is a
    assert node_b.get_value(0) is None
    with pytest.raises(GraphError):
        register.get_node(Matrix([0.0]))

def test_register_detaches_matrices():
    register = NodeRegister()
    a = Matrix([1.0])
    a.set_procedure_factory(object())
    register.define_node(a, False, 0, 0)
    register.remove_procedure_factory()
    assert a.get_procedure_factory() is None

def nodes_with(*matrices):
    nodes = []
    for i, matrix in enumerate(matrices):
        node = Node(i, False, 2, 1)
        if matrix is not None:
            node.set_value(0, matrix)
        nodes.append(node)
    return nodes

def test_expression_forward():
    nodes = nodes_with(Matrix([1.0, 4.0]), Matrix([2.0, 2.0]), None)
    expected = {
        ExpressionType.ADD: [3.0, 6.0],
        ExpressionType.SUB: [-1.0, 2.0],
        ExpressionType.MUL: [2.0, 8.0],
        ExpressionType.DIV: [0.5, 2.0],
    }
    for expression_type, value in expected.items():
        Expression.structural(0, 0, 1, 2, expression_type).calculate_expression(nodes, 0)
        assert np.allclose(nodes[2].get_value(0).value.ravel(), value)

    Expression.unary(0, 0, 2, UnaryFunction(UnaryFunctionType.SQRT)).calculate_expression(nodes, 0)
    assert np.allclose(nodes[2].get_value(0).value.ravel(), [1.0, 2.0])

    mse = BinaryFunction(BinaryFunctionType.MEAN_SQUARED_ERROR)
    Expression.binary(0, 0, 1, 2, mse).calculate_expression(nodes, 0)
    assert np.allclose(nodes[2].get_value(0).value.ravel(), [0.5, 2.0])

def test_expression_dot():
    nodes = [Node(0, False, 1, 2), Node(1, False, 2, 1), Node(2, False, 1, 1)]
    nodes[0].set_value(0, Matrix([[1.0, 2.0]]))
    nodes[1].set_value(0, Matrix([3.0, 4.0]))
    expression = Expression.structural(0, 0, 1, 2, ExpressionType.DOT)
    expression.calculate_expression(nodes, 0)
    assert nodes[2].get_value(0).get_value(0, 0) == 11.0

    nodes[2].set_gradient(0, Matrix([2.0]))
    expression.calculate_gradient(nodes, 0)
    assert np.allclose(nodes[0].get_gradient(0).value, [[6.0, 8.0]])
    assert np.allclose(nodes[1].get_gradient(0).value, [[2.0], [4.0]])

def test_expression_backward():
    def gradients(expression_type):
        nodes = nodes_with(Matrix([1.0, 4.0]), Matrix([2.0, 2.0]), None)
        expression = Expression.structural(0, 0, 1, 2, expression_type)
        expression.calculate_expression(nodes, 0)
        nodes[2].set_gradient(0, Matrix([1.0, 1.0]))
        expression.calculate_gradient(nodes, 0)
        return nodes[0].get_gradient(0).value.ravel(), nodes[1].get_gradient(0).value.ravel()

    g1, g2 = gradients(ExpressionType.ADD)
    assert np.allclose(g1, [1.0, 1.0]) and np.allclose(g2, [1.0, 1.0])
    g1, g2 = gradients(ExpressionType.SUB)
    assert np.allclose(g1, [1.0, 1.0]) and np.allclose(g2, [-1.0, -1.0])
    g1, g2 = gradients(ExpressionType.MUL)
    assert np.allclose(g1, [2.0, 2.0]) and np.allclose(g2, [1.0, 4.0])
    g1, g2 = gradients(ExpressionType.DIV)
    assert np.allclose(g1, [0.5, 0.5]) and np.allclose(g2, [-0.25, -1.0])

def test_expression_validation():
    with pytest.raises(GraphError):
        Expression.structural(0, 0, 1, 2, ExpressionType.UNIFUN)
    with pytest.raises(GraphError):
        Expression.structural(0, 0, 1, 2, ExpressionType.BIFUN)
    with pytest.raises(GraphError):
        Expression.structural(0, 0, 1, 1, ExpressionType.ADD)
    with pytest.raises(GraphError):
        Expression(0, ExpressionType.MUL, 0, None, 1)

    expression = Expression.structural(4, 0, 1, 2, ExpressionType.ADD)
    assert expression.arguments() == (0, 1)
    unary = Expression.unary(5, 2, 3, UnaryFunction(UnaryFunctionType.EXP))
    assert unary.arguments() == (2,)

def test_expression_missing_values():
    nodes = nodes_with(Matrix([1.0, 1.0]), None, None)
    expression = Expression.structural(0, 0, 1, 2, ExpressionType.ADD)
    with pytest.raises(GraphError) as info:
        expression.calculate_expression(nodes, 0)
    assert "not defined at index 0" in str(info.value)
    with pytest.raises(GraphError):
        expression.calculate_gradient(nodes, 0)

def test_expression_reset():
    nodes = nodes_with(Matrix([1.0, 4.0]), Matrix([2.0, 2.0]), None)
    nodes[0].set_value(1, Matrix([0.0, 0.0]))
    expression = Expression.structural(0, 0, 1, 2, ExpressionType.ADD)
    expression.calculate_expression(nodes, 0)
    expression.reset_expression(nodes, 0)
    assert nodes[2].get_value(0) is None
    assert nodes[0].get_value(1) is not None
    expression.reset_expression(nodes)
    assert nodes[0].get_value(1) is None

def test_expression_render():
    expression = Expression.structural(0, 1, 2, 3, ExpressionType.SUB)
    assert str(expression) == "n3 = sub(n1, n2)"
    relu = UnaryFunction(UnaryFunctionType.RELU)
    assert Expression.unary(1, 3, 4, relu).render(lambda i: f"x{i}") == "x4 = relu(x3)"

def test_link_forward():
    source = Matrix([5.0, 6.0])
    nodes = [Node(0, False, 2, 1), Node(1, False, 2, 1)]
    link = NodeLink(0, 1)

    link.update_expression(nodes, 0)
    assert np.allclose(nodes[1].get_value(0).value, 0.0)
    assert link.previous_value is None

    nodes[0].set_value(0, source)
    link.update_expression(nodes, 1)
    assert nodes[1].get_value(1) is source
    assert link.previous_value is source

    # index 3 has no value at index 2, it falls back to the cached one
    link.update_expression(nodes, 3)
    assert nodes[1].get_value(3) is source
    assert link.previous_value is None

    link.reset()
    link.update_expression(nodes, 5)
    assert np.allclose(nodes[1].get_value(5).value, 0.0)

def test_link_backward():
    nodes = [Node(0, False, 2, 1), Node(1, False, 2, 1)]
    link = NodeLink(0, 1)
    nodes[1].set_gradient(2, Matrix([1.0, 2.0]))

    link.update_gradient(nodes, 1)
    assert np.allclose(nodes[0].get_gradient(1).value, [[1.0], [2.0]])
    link.update_gradient(nodes, 1)
    assert np.allclose(nodes[0].get_gradient(1).value, [[2.0], [4.0]])

    link.update_gradient(nodes, 4)
    assert np.allclose(nodes[0].get_gradient(4).value, [[1.0], [2.0]])
    assert link.previous_gradient is None

    link.update_gradient(nodes, 6)
    assert np.allclose(nodes[0].get_gradient(6).value, 0.0)

def test_unique_links():
    a = NodeLink(3, 1)
    b = NodeLink(3, 1, previous_value=Matrix([1.0]))
    c = NodeLink(4, 1)
    assert a == b
    assert hash(a) == hash(b)
    assert unique_links([a, c, b]) == [a, c]
    assert unique_links([a, c, b])[0] is a
