from __future__ import annotations

from ..ir import PARAMETER
from ..registry import register


@register(PARAMETER, local=True)
def run(node, ctx):
    return node.params["value"]
