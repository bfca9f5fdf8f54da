[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ipswkit"
version = "0.1.0"
description = "Read IPSW firmware bundles and personalize IMG3 and IMG4 firmware components"
requires-python = ">=3.10"
dependencies = []
keywords = ["ipsw", "img3", "img4", "im4m", "firmware", "asn1", "build-manifest", "shsh"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Embedded Systems",
    "Topic :: System :: Archiving",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["ipswkit"]

[tool.hatch.build.targets.sdist]
include = ["ipswkit", "tests", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
