"""
gitmount: a FUSE filesystem over a git checkout that commits and pushes changes.
"""

__version__ = "0.1.0"
