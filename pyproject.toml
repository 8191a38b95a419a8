[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "crossref-datafile"
version = "1.1.0"
description = "Index, reorganize and sample Crossref JSONL.gz data files."
requires-python = ">=3.10"
keywords = ["crossref", "doi", "jsonl", "metadata", "sampling", "indexing"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Science/Research",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Information Analysis",
]
dependencies = [
    "tqdm",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
crossref-indexer = "crossref_datafile.indexer:main"
crossref-organizer = "crossref_datafile.organizer:main"
crossref-sampler = "crossref_datafile.sampler:main"

[tool.hatch.build.targets.wheel]
packages = ["crossref_datafile"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
