import setuptools

with open("README.md", "r") as fh:
    long_description = fh.read()

version = {}
with open(r"acmerotate/version.py") as fp:
    exec(fp.read(), version)

dependencies = [
    "acme>=2.0",
    "aiohttp>=3.9",
    "click>=8.0",
    "cryptography>=42.0",
    "josepy>=1.13",
    "pydantic>=2.0",
    "pydantic-settings>=2.0",
    "PyYAML>=6.0",
]

setuptools.setup(
    name="acmerotate",
    version=version["__version__"],
    description="Obtains a TLS certificate via ACME http-01 and rotates it under a running HTTPS listener",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(include=["acmerotate", "acmerotate.*"]),
    install_requires=dependencies,
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.24",
        ],
    },
    entry_points={
        "console_scripts": [
            "acmerotate=acmerotate.main:main",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.10",
)
