from __future__ import annotations

from ..ir import READ
from ..registry import register


@register(READ)
def run(node, ctx):
    address = ctx.resolve(node.params["target"])
    return ctx.adapter.read(address, node.params["method"])
