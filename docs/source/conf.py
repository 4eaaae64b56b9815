import os
import sys

sys.path.insert(0, os.path.abspath("../.."))

project = "Equipment Lifecycle"
copyright = "2025, Production Operations"
author = "Production Operations"
release = "0.3.0"

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.napoleon",
    "sphinx.ext.viewcode",
]

templates_path = ["_templates"]
exclude_patterns: list[str] = []

html_theme = "sphinx_rtd_theme"
html_static_path = ["_static"]
