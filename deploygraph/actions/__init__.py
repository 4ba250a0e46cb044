"""
Handlers for every node kind. Importing this package registers them.
"""
from . import call, contract, parameter, read  # noqa: F401
