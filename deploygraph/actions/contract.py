from __future__ import annotations

from ..ir import CONTRACT, CONTRACT_AT
from ..registry import register


@register(CONTRACT)
def deploy(node, ctx):
    args = ctx.resolve(node.params["args"])
    return ctx.adapter.deploy_contract(node.params["contract"], args)


# an existing contract needs no transaction, its address is the result
@register(CONTRACT_AT)
def bind(node, ctx):
    return ctx.resolve(node.params["address"])
