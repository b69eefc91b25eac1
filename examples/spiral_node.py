import torch
from neuralDE import FastChain, FastDense, NeuralODE, ODEProblem, solve

torch.set_default_dtype(torch.float64)
torch.manual_seed(0)

# 1. Generate data from the true dynamics du/dt = (u^3) A^T
true_A = torch.tensor([[-0.1, 2.0], [-2.0, -0.1]])
u0 = torch.tensor([2.0, 0.0])
tspan = (0.0, 1.5)
saveat = torch.linspace(*tspan, 30)


def trueODEfunc(u, p, t):
    return (u**3) @ true_A.t()


ode_data = solve(ODEProblem(trueODEfunc, u0, tspan), "dopri5", saveat=saveat, rtol=1e-8).u

# 2. Neural ODE with a pre-flattened network (adjoint gradients by default)
dudt = FastChain(lambda x: x**3, FastDense(2, 50, torch.tanh), FastDense(50, 2))
node = NeuralODE(dudt, tspan, "dopri5", saveat=saveat, rtol=1e-7, atol=1e-9)
node.print_layer_info()

# 3. Training loop; the flat parameter vector is the only nn.Parameter
optimizer = torch.optim.Adam(node.parameters(), lr=0.05)
for it in range(300):
    pred = node(u0).u
    loss = ((ode_data - pred) ** 2).sum()

    optimizer.zero_grad()
    loss.backward()
    optimizer.step()

    if it % 25 == 0:
        print(f"Iter {it}, Loss: {loss.item():.4f}")

# 4. Evaluate a candidate parameter vector without touching the trained one
trial = node.p.detach() + 1e-3 * torch.randn_like(node.p)
with torch.no_grad():
    print("perturbed loss:", ((ode_data - node(u0, trial).u) ** 2).sum().item())
