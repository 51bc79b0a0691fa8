# fitsmanip setuptools configuration
from setuptools import find_packages, setup

setup(
    name="fitsmanip",
    version="0.1.0",
    description="FITS file manipulation: header keywords, images, tables and an image pipeline on PyTorch tensors",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.10",
    install_requires=[
        "torch",
        "numpy",
        "psutil",
        "pytorch-frame",
    ],
    extras_require={
        "test": [
            "pytest",
            "astropy",
        ],
    },
    entry_points={
        "console_scripts": [
            "fitsmanip=fitsmanip.cli:main",
        ],
    },
)
