from setuptools import setup, find_packages

setup(
    name="listing-stats",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "flask",
        "apscheduler>=3.10,<4",
        "prometheus_client",
        "python-json-logger",
        "redis>=4.2",
        "requests",
    ],
    extras_require={
        "test": ["pytest"],
    },
    python_requires=">=3.9",
)
