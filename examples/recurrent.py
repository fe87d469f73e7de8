import logging
import numpy as np
from dataclasses import dataclass
from tracegrad.functions import UnaryFunction, UnaryFunctionType
from tracegrad.logger import PACKAGE_LOGGER, get_logger
from tracegrad.procedure import ProcedureFactory
from tracegrad.tensor import Matrix

logger = get_logger("tracegrad.examples.recurrent")

@dataclass
class Model:
    input_weights: Matrix
    hidden_weights: Matrix
    bias: Matrix
    output_weights: Matrix
    output_bias: Matrix

    def parameters(self):
        return [self.input_weights, self.hidden_weights, self.bias, self.output_weights, self.output_bias]

def init_model(input_dim=1, hidden_dim=16, output_dim=1, rng=None):
    """Initialize a single layer recurrent network"""
    rng = rng if rng is not None else np.random.default_rng()
    return Model(
        Matrix.random(hidden_dim, input_dim, 0.3, rng, "input_weights"),
        Matrix.random(hidden_dim, hidden_dim, 0.1, rng, "hidden_weights"),
        Matrix.zeros(hidden_dim, 1, "bias"),
        Matrix.random(output_dim, hidden_dim, 0.3, rng, "output_weights"),
        Matrix.zeros(output_dim, 1, "output_bias"),
    )

tanh = UnaryFunction(UnaryFunctionType.TANH)

def step(model, x, hidden):
    """One time step, returns the next hidden state and the prediction"""
    hidden = (model.input_weights @ x + model.hidden_weights @ hidden + model.bias).apply(tanh)
    return hidden, model.output_weights @ hidden + model.output_bias

def compile_model(model):
    # Two builds: the first probes the graph, the second one is compared with
    # it to find the hidden state carried between time steps
    factory = ProcedureFactory()
    factory.register_matrix(model.parameters())
    hidden = Matrix.zeros(model.hidden_weights.rows, 1)
    procedure = None
    for _ in range(2):
        x = Matrix.zeros(model.input_weights.cols, 1)
        factory.new_procedure(x)
        hidden, prediction = step(model, x, hidden)
        procedure = factory.end_procedure(prediction)
    logger.info("compiled procedure with %d expressions and %d links",
                procedure.size, len(procedure.links))
    logger.debug("\n%s", procedure)
    return procedure

def sequence(length, phase):
    t = np.linspace(0, 4 * np.pi, length + 1) + phase
    return np.sin(t) * np.cos(0.5 * t)

def train_step(procedure, model, signal, velocity, lr, beta=0.9):
    """Truncated backpropagation through the whole sequence, returns the loss"""
    procedure.reset()
    procedure.reset_dependencies()
    inputs = [Matrix([value]) for value in signal[:-1]]
    targets = signal[1:]
    predictions = [procedure.calculate_expression(t, x).get_value(t) for t, x in enumerate(inputs)]

    loss = 0.0
    for t in reversed(range(len(inputs))):
        error = predictions[t].value - targets[t]
        loss += float(np.sum(error ** 2)) / len(inputs)
        procedure.calculate_gradient(t, Matrix(2.0 * error / len(inputs)))

    for parameter in model.parameters():
        gradient = procedure.get_node(parameter).get_gradient(0)
        if gradient is None:
            continue
        v = velocity.setdefault(parameter.matrix_id, np.zeros_like(parameter.value))
        v *= beta
        v += (1 - beta) * np.clip(gradient.value, -1.0, 1.0)
        # in place, the compiled procedure holds these matrices
        parameter.value -= lr * v
    return loss

if __name__ == "__main__":
    logging.getLogger(PACKAGE_LOGGER).setLevel(logging.INFO)
    rng = np.random.default_rng(0)
    model = init_model(rng=rng)
    procedure = compile_model(model)

    velocity = {}
    num_steps = 2000
    for i in range(num_steps):
        lr = 0.05 * (1 - i / num_steps) + 0.005
        loss = train_step(procedure, model, sequence(40, rng.uniform(0, 2 * np.pi)), velocity, lr)
        if i % 100 == 0:
            logger.info("Step %d: loss = %.5f, lr = %.4f", i, loss, lr)
