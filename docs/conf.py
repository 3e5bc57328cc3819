# Configuration file for the Sphinx documentation builder.
#
# For the full list of built-in configuration values, see the documentation:
# https://www.sphinx-doc.org/en/master/usage/configuration.html

# -- Project information -----------------------------------------------------
# https://www.sphinx-doc.org/en/master/usage/configuration.html#project-information

project = 'Voronoi Simulated Annealing'
copyright = '2025, Voronoi Simulated Annealing contributors'
author = 'Voronoi Simulated Annealing contributors'
release = '0.1.0'

import os
import sys
sys.path.insert(0, os.path.abspath(".."))

# -- General configuration ---------------------------------------------------
# https://www.sphinx-doc.org/en/master/usage/configuration.html#general-configuration

extensions = [
    "sphinx.ext.autodoc",           # pull docstrings from code
    "sphinx.ext.autosummary",       # auto-generate API pages
    "sphinx_autodoc_typehints",     # use type hints in docs
    "myst_parser",                  # allow Markdown
    "sphinx.ext.napoleon",          # Google/NumPy docstring syntax
]
autosummary_generate = True

# cv2 is heavy and may be missing on doc builders
autodoc_mock_imports = ["cv2"]

source_suffix = {
    ".rst": "restructuredtext",
    ".md": "markdown",
}

templates_path = ['_templates']
exclude_patterns = ['_build', 'Thumbs.db', '.DS_Store']

# -- Options for HTML output -------------------------------------------------
# https://www.sphinx-doc.org/en/master/usage/configuration.html#options-for-html-output

html_theme = "sphinx_rtd_theme"
