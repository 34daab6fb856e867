# Sphinx configuration file

import os
import sys
sys.path.insert(0, os.path.abspath('../src'))

from local_workflow_engine import __version__  # noqa: E402

project = 'Local Workflow Engine'
copyright = '2026, Local Workflow Engine contributors'
author = 'Local Workflow Engine contributors'
release = __version__

extensions = [
    'sphinx.ext.autodoc',
    'sphinx.ext.napoleon',
    'sphinx.ext.viewcode',
    'sphinx.ext.intersphinx',
    'sphinx_autodoc_typehints',
]

templates_path = ['_templates']
exclude_patterns = ['_build', 'Thumbs.db', '.DS_Store']

html_theme = 'sphinx_rtd_theme'
html_static_path = ['_static']

# Autodoc settings
autodoc_default_options = {
    'members': True,
    'member-order': 'bysource',
    'undoc-members': True,
    'exclude-members': '__weakref__, model_config, model_fields',
}
# The llama backend is an optional extra.
autodoc_mock_imports = ['llama_cpp']

# Napoleon settings
napoleon_google_docstring = True
napoleon_numpy_docstring = False

# Intersphinx mapping
intersphinx_mapping = {
    'python': ('https://docs.python.org/3', None),
    'pydantic': ('https://docs.pydantic.dev/latest', None),
    'requests': ('https://requests.readthedocs.io/en/latest', None),
}
