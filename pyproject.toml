[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tunnelstress"
version = "0.1.0"
description = "Stress test HTTP/2 CONNECT tunnels through a proxy and measure round-trip latency"
requires-python = ">=3.10"
keywords = [
    "http2",
    "connect",
    "proxy",
    "tunnel",
    "stress-test",
    "latency",
    "benchmark",
    "echo-server",
    "memory",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Benchmark",
    "Topic :: Internet :: Proxy Servers",
    "Topic :: System :: Networking :: Monitoring",
]
dependencies = [
    "h2",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
tunnelstress = "tunnelstress.cli:main"
tunnelstress-echoserver = "tunnelstress.echoserver:main"
tunnelstress-watcher = "tunnelstress.watcher:main"

[tool.hatch.build.targets.wheel]
packages = ["tunnelstress"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
