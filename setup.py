from setuptools import setup, find_packages

setup(
    name="neuralDE",
    description="Neural differential-equation layers in PyTorch: ODE, SDE, delay, DAE and mass-matrix variants.",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*", "examples", "examples.*"]),
    install_requires=[
        "torch>=2.0",
        "torchdiffeq>=0.2.3",
        "torchsde>=0.2.6",
        "numpy",
    ],
    extras_require={"test": ["pytest"]},
    python_requires=">=3.8",
)
