from __future__ import annotations

from eth_abi import encode
from eth_abi.exceptions import EncodingError
from eth_utils import function_signature_to_4byte_selector, to_bytes, to_checksum_address

from .errors import InvalidAmount, QuoteUnavailable
from .types import BPS_DENOMINATOR, Quote, RoutePath, SwapCall

MULTICALL_SIGNATURE = "multicall(uint256,bytes[])"
EXACT_INPUT_SINGLE_SIGNATURE = "exactInputSingle((address,address,uint24,address,uint256,uint256,uint160))"
EXACT_INPUT_SIGNATURE = "exactInput((bytes,address,uint256,uint256))"
SWAP_EXACT_TOKENS_SIGNATURE = "swapExactTokensForTokens(uint256,uint256,address[],address)"


def minimum_out(expected_out: int, slippage_bps: int) -> int:
    """Floor of ``expected_out`` reduced by ``slippage_bps``; never above ``expected_out``."""
    if slippage_bps < 0 or slippage_bps > BPS_DENOMINATOR:
        raise InvalidAmount(f"Slippage must be within 0..{BPS_DENOMINATOR} bps, got {slippage_bps}")
    if expected_out < 0:
        raise InvalidAmount(f"Expected output must be non-negative, got {expected_out}")
    return expected_out * (BPS_DENOMINATOR - slippage_bps) // BPS_DENOMINATOR


def path_minimums(paths: tuple[RoutePath, ...], total_minimum: int) -> list[int]:
    """Split ``total_minimum`` over split paths in proportion to their quoted output.

    Each share is floored, so the shares sum to at most ``total_minimum``.
    """
    if len(paths) == 1:
        return [total_minimum]
    quoted_total = sum(path.expected_out for path in paths)
    if quoted_total <= 0:
        raise QuoteUnavailable("Route paths carry no quoted output")
    return [path.expected_out * total_minimum // quoted_total for path in paths]


def encode_v3_path(path: RoutePath) -> bytes:
    """Packed ``token | fee(uint24) | token | ...`` path used by ``exactInput``."""
    encoded = to_bytes(hexstr=path.hops[0].token_in)
    for hop in path.hops:
        if hop.fee is None:
            raise QuoteUnavailable(f"v3 hop through {hop.pool_address} has no fee tier")
        encoded += int(hop.fee).to_bytes(3, "big") + to_bytes(hexstr=hop.token_out)
    return encoded


def _selector(signature: str) -> bytes:
    return function_signature_to_4byte_selector(signature)


def encode_path_call(path: RoutePath, *, recipient: str, amount_out_minimum: int) -> bytes:
    protocol = path.protocol
    if protocol == "v3" and len(path.hops) == 1:
        hop = path.hops[0]
        return _selector(EXACT_INPUT_SINGLE_SIGNATURE) + encode(
            ["(address,address,uint24,address,uint256,uint256,uint160)"],
            [
                (
                    to_checksum_address(hop.token_in),
                    to_checksum_address(hop.token_out),
                    int(hop.fee or 0),
                    to_checksum_address(recipient),
                    path.amount_in,
                    amount_out_minimum,
                    0,
                )
            ],
        )
    if protocol == "v3":
        return _selector(EXACT_INPUT_SIGNATURE) + encode(
            ["(bytes,address,uint256,uint256)"],
            [(encode_v3_path(path), to_checksum_address(recipient), path.amount_in, amount_out_minimum)],
        )
    if protocol == "v2":
        tokens = [to_checksum_address(path.hops[0].token_in)]
        tokens.extend(to_checksum_address(hop.token_out) for hop in path.hops)
        return _selector(SWAP_EXACT_TOKENS_SIGNATURE) + encode(
            ["uint256", "uint256", "address[]", "address"],
            [path.amount_in, amount_out_minimum, tokens, to_checksum_address(recipient)],
        )
    raise QuoteUnavailable("Route path mixes pool protocols; cannot encode it for the router")


def build_swap_call(
    *,
    quote: Quote,
    router_address: str,
    recipient: str,
    slippage_bps: int,
    deadline: int,
) -> SwapCall:
    """Router ``multicall(deadline, data[])`` spending exactly the quoted input."""
    if quote.route.is_empty:
        raise QuoteUnavailable("Quote carries an empty route")
    if sum(path.amount_in for path in quote.route.paths) != quote.amount_in:
        raise QuoteUnavailable("Route path inputs do not add up to the quoted input")

    total_minimum = minimum_out(quote.expected_out, slippage_bps)
    shares = path_minimums(quote.route.paths, total_minimum)
    try:
        calls = [
            encode_path_call(path, recipient=recipient, amount_out_minimum=share)
            for path, share in zip(quote.route.paths, shares)
        ]
        calldata = _selector(MULTICALL_SIGNATURE) + encode(["uint256", "bytes[]"], [int(deadline), calls])
        target = to_checksum_address(router_address)
    except (EncodingError, OverflowError, ValueError) as error:
        raise QuoteUnavailable(f"Route cannot be encoded for the router: {error}") from error
    return SwapCall(
        target=target,
        calldata="0x" + calldata.hex(),
        value=0,
        minimum_out=total_minimum,
        deadline=int(deadline),
    )
