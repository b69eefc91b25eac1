import torch
import torch.nn as nn
from neuralDE import NeuralODEMM, ODEProblem, solve

torch.set_default_dtype(torch.float64)
torch.manual_seed(0)

# 1. Robertson chemical kinetics; the third row is the conservation law
#    u1 + u2 + u3 = 1, so the mass matrix is singular there.
M = torch.diag(torch.tensor([1.0, 1.0, 0.0]))
u0 = torch.tensor([1.0, 0.0, 0.0])
tspan = (0.0, 0.1)
saveat = torch.linspace(*tspan, 11)


def rober(u, p, t):
    y1, y2, y3 = u.unbind(-1)
    k1, k2, k3 = p
    return torch.stack(
        [
            -k1 * y1 + k3 * y2 * y3,
            k1 * y1 - k2 * y2**2 - k3 * y2 * y3,
            y1 + y2 + y3 - 1,
        ],
        -1,
    )


prob = ODEProblem(rober, u0, tspan, torch.tensor([0.04, 3e7, 1e4]), mass_matrix=M)
data = solve(prob, "dopri5", saveat=saveat, rtol=1e-8, atol=1e-10).u


# 2. Learn the two kinetic rows; the conservation law stays hard-coded
def constraint(u, p, t):
    return u.sum(-1, keepdim=True) - 1


model = nn.Sequential(nn.Linear(3, 64), nn.Tanh(), nn.Linear(64, 2))
mm = NeuralODEMM(model, constraint, tspan, M, "dopri5", saveat=saveat, rtol=1e-6, atol=1e-8)
mm.print_layer_info()

# 3. Training loop
optimizer = torch.optim.Adam(mm.parameters(), lr=1e-2)
for it in range(100):
    sol = mm(u0)
    loss = ((data - sol.u) ** 2).sum()

    optimizer.zero_grad()
    loss.backward()
    optimizer.step()

    if it % 10 == 0:
        drift = (sol.u.sum(-1) - 1).abs().max().item()
        print(f"Iter {it}, Loss: {loss.item():.6f}, constraint error: {drift:.2e}")
