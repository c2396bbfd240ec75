"""Storyloom: parallel story admission and file-reservation coordination.

Storyloom decides which backlog stories may be handed to autonomous
worker agents at the same time, keeps those agents from editing the same
files, recommends an assignee for each story from its capability tags,
and reports workers that have gone quiet.
"""

__version__ = "0.1.0"
