from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="onnx-graph-simplifier",
    version="0.1.0",
    author="ONNX Tool Team",
    author_email="example@example.com",
    description="Constant folding, shape inference and structural simplification for ONNX graphs",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.8",
    install_requires=[
        "numpy>=1.16.0",
        "onnx>=1.13.0",
        "protobuf>=3.12.0",
        "click>=7.0",
        "tqdm>=4.45.0",
        "colorama>=0.4.6",
        "networkx>=2.5",
    ],
    extras_require={
        "test": [
            "pytest>=6.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "onnx-graph-simplifier=onnx_graph_simplifier.cli:main",
        ],
    },
)
