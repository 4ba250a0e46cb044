from __future__ import annotations

from ..ir import CALL
from ..registry import register


@register(CALL)
def run(node, ctx):
    address = ctx.resolve(node.params["target"])
    args = ctx.resolve(node.params["args"])
    return ctx.adapter.call(address, node.params["method"], args)
