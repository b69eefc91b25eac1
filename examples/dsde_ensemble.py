import torch
from neuralDE import FastChain, FastDense, NeuralDSDE, SDEProblem, solve

torch.set_default_dtype(torch.float64)
torch.manual_seed(0)

# 1. Sample paths of du = (u^3) A^T dt + 0.1 u dW
true_A = torch.tensor([[-0.1, 2.0], [-2.0, -0.1]])
u0 = torch.tensor([2.0, 0.0])
tspan = (0.0, 1.0)
saveat = 0.1
trajectories = 100


def drift(u, p, t):
    return (u**3) @ true_A.t()


def diffusion(u, p, t):
    return 0.1 * u


prob = SDEProblem(drift, diffusion, u0, tspan)
truth = solve(prob, "srk", saveat=saveat, dt=0.01, trajectories=10000, seed=1).u
target_mean, target_var = truth.mean(1), truth.var(1)

# 2. Diagonal-noise neural SDE: one network for each term
drift_net = FastChain(lambda x: x**3, FastDense(2, 50, torch.tanh), FastDense(50, 2))
diffusion_net = FastChain(FastDense(2, 2))
nsde = NeuralDSDE(drift_net, diffusion_net, tspan, "srk", saveat=saveat, dt=0.01)
nsde.print_layer_info()

# 3. Match the first two moments of the ensemble; gradients go through the solver tape
optimizer = torch.optim.Adam(nsde.parameters(), lr=0.025)
for it in range(100):
    paths = nsde(u0, trajectories=trajectories, seed=it).u
    loss = ((paths.mean(1) - target_mean) ** 2).sum() + ((paths.var(1) - target_var) ** 2).sum()

    optimizer.zero_grad()
    loss.backward()
    optimizer.step()

    if it % 10 == 0:
        print(f"Iter {it}, Loss: {loss.item():.4f}")
