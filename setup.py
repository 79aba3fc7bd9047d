from setuptools import setup, find_packages

# Import __version__
exec(open("mysql_wire/version.py").read())

setup(
    name="mysql-wire",
    version=__version__,
    description="A python implementation of the mysql client protocol",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    license="MIT",
    packages=find_packages(include=["mysql_wire", "mysql_wire.*"]),
    python_requires=">=3.8",
    install_requires=["cryptography>=3.1"],
    extras_require={
        "dev": [
            "mypy",
            "mysql-mimic",
            "black",
            "coverage",
            "pylint",
            "PyNaCl",
            "pytest",
            "pytest-asyncio",
            "sqlglot",
            "twine",
            "wheel",
        ],
        "ed25519": ["PyNaCl>=1.4"],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Operating System :: OS Independent",
        "Programming Language :: SQL",
        "Programming Language :: Python :: 3 :: Only",
        "Topic :: Database",
    ],
)
