"""
Resúmenes legibles de transacciones ("Swapped 100 USDC for 50 RAY").

Una plantilla por tipo de transacción. Cada plantilla recibe el contexto ya
resuelto (flujos, patas del swap, protocolo, etiqueta de contraparte) y
devuelve texto; si faltan datos degrada a un texto genérico, nunca falla.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from decimal import Decimal

from models.transaction import FlowDirection, TransactionType
from services.flows import FlowData
from services.swap_resolver import SwapLegs

_T = TransactionType


def fmt_amount(value: Decimal) -> str:
    """
    Formato compacto:
      >= 1M → "1.23M", >= 1K → "4.56K", >= 1 → hasta 4 decimales,
      >= 0.0001 → hasta 6 decimales, resto → notación exponencial.
    """
    amount = abs(value)
    if amount >= 1_000_000:
        return f"{amount / 1_000_000:.2f}M"
    if amount >= 1_000:
        return f"{amount / 1_000:.2f}K"
    if amount >= 1:
        return _strip_zeros(f"{amount:.4f}")
    if amount >= Decimal("0.0001"):
        return _strip_zeros(f"{amount:.6f}")
    if amount == 0:
        return "0"
    return f"{amount:.2e}"


def _strip_zeros(text: str) -> str:
    return text.rstrip("0").rstrip(".") if "." in text else text


@dataclass(frozen=True)
class SummaryContext:
    tx_type: TransactionType
    flows: Sequence[FlowData] = ()
    swap: SwapLegs | None = None
    protocol_name: str | None = None
    liquid_staking: bool = False
    counterparty_label: str | None = None

    def first(self, direction: FlowDirection) -> FlowData | None:
        return next((f for f in self.flows if f.direction == direction and not f.is_fee), None)

    @property
    def first_in(self) -> FlowData | None:
        return self.first(FlowDirection.IN)

    @property
    def first_out(self) -> FlowData | None:
        return self.first(FlowDirection.OUT)


def _leg(flow: FlowData) -> str:
    return f"{fmt_amount(flow.amount)} {flow.symbol or flow.mint[:6]}"


# ---------------------------------------------------------------------------
# Plantillas on-chain
# ---------------------------------------------------------------------------


def _swap(ctx: SummaryContext) -> str:
    if ctx.swap is None:
        return "Swap"
    sent, received = ctx.swap.sent, ctx.swap.received
    return (
        f"Swapped {fmt_amount(sent.amount)} {sent.symbol} "
        f"for {fmt_amount(received.amount)} {received.symbol}"
    )


def _transfer_in(ctx: SummaryContext) -> str:
    flow = ctx.first_in
    if flow is None:
        return "Incoming transfer"
    if ctx.counterparty_label:
        return f"Received {_leg(flow)} from {ctx.counterparty_label}"
    return f"Received {_leg(flow)}"


def _transfer_out(ctx: SummaryContext) -> str:
    flow = ctx.first_out
    if flow is None:
        return "Outgoing transfer"
    if ctx.counterparty_label:
        return f"Sent {_leg(flow)} to {ctx.counterparty_label}"
    return f"Sent {_leg(flow)}"


def _stake(ctx: SummaryContext) -> str:
    flow = ctx.first_out or ctx.first_in
    amount = f" {_leg(flow)}" if flow else ""
    suffix = f" via {ctx.protocol_name} (liquid)" if ctx.liquid_staking and ctx.protocol_name else ""
    return f"Staked{amount}{suffix}"


def _unstake(ctx: SummaryContext) -> str:
    flow = ctx.first_in or ctx.first_out
    amount = f" {_leg(flow)}" if flow else ""
    return f"Unstaked{amount} from {ctx.protocol_name or 'Native Staking'}"


def _with_protocol(verb: str, direction: FlowDirection, preposition: str, fallback: str) -> Callable[[SummaryContext], str]:
    def template(ctx: SummaryContext) -> str:
        flow = ctx.first(direction)
        if flow is None:
            return f"{fallback} on {ctx.protocol_name}" if ctx.protocol_name else fallback
        text = f"{verb} {_leg(flow)}"
        return f"{text} {preposition} {ctx.protocol_name}" if ctx.protocol_name else text

    return template


def _burn(ctx: SummaryContext) -> str:
    flow = ctx.first_out
    return f"Burned {_leg(flow)}" if flow else "Token burn"


def _mint(ctx: SummaryContext) -> str:
    flow = ctx.first_in
    return f"Minted {_leg(flow)}" if flow else "Token mint"


def _nft_mint(ctx: SummaryContext) -> str:
    return f"Minted NFT via {ctx.protocol_name}" if ctx.protocol_name else "Minted NFT"


def _nft_sale(ctx: SummaryContext) -> str:
    flow = ctx.first_in
    return f"Sold NFT for {_leg(flow)}" if flow else "NFT sale"


def _nft_purchase(ctx: SummaryContext) -> str:
    flow = ctx.first_out
    return f"Bought NFT for {_leg(flow)}" if flow else "NFT purchase"


def _nft_activity(ctx: SummaryContext) -> str:
    return f"NFT activity on {ctx.protocol_name}" if ctx.protocol_name else "NFT activity"


def _memo(ctx: SummaryContext) -> str:
    return "Memo"


def _program_interaction(ctx: SummaryContext) -> str:
    label = ctx.protocol_name or "Program"
    out_flow, in_flow = ctx.first_out, ctx.first_in
    if out_flow and not in_flow:
        return f"Sent {_leg(out_flow)} · {label} interaction"
    if in_flow and not out_flow:
        return f"Received {_leg(in_flow)} · {label} interaction"
    return f"{label} interaction"


def _unknown(ctx: SummaryContext) -> str:
    if ctx.protocol_name:
        return f"Interaction with {ctx.protocol_name}"
    return "Unknown transaction"


# ---------------------------------------------------------------------------
# Plantillas de exchange
# ---------------------------------------------------------------------------


def _exchange_trade(ctx: SummaryContext) -> str:
    sold, bought = ctx.first_out, ctx.first_in
    if sold and bought:
        return f"Traded {_leg(sold)} for {_leg(bought)}"
    if bought:
        return f"Bought {_leg(bought)}"
    if sold:
        return f"Sold {_leg(sold)}"
    return "P2P trade" if ctx.tx_type == _T.EXCHANGE_C2C_TRADE else "Exchange trade"


def _single(direction: FlowDirection, template: str, fallback: str) -> Callable[[SummaryContext], str]:
    def build(ctx: SummaryContext) -> str:
        flow = ctx.first(direction)
        return template.format(leg=_leg(flow)) if flow else fallback

    return build


def _convert(prefix: str, joiner: str, fallback: str) -> Callable[[SummaryContext], str]:
    def build(ctx: SummaryContext) -> str:
        src, dst = ctx.first_out, ctx.first_in
        if src and dst:
            return f"{prefix} {_leg(src)} {joiner} {_leg(dst)}"
        return fallback

    return build


_IN, _OUT = FlowDirection.IN, FlowDirection.OUT

_TEMPLATES: dict[TransactionType, Callable[[SummaryContext], str]] = {
    _T.SWAP: _swap,
    _T.TRANSFER_IN: _transfer_in,
    _T.TRANSFER_OUT: _transfer_out,
    _T.STAKE: _stake,
    _T.UNSTAKE: _unstake,
    _T.LP_DEPOSIT: _with_protocol("Added", _OUT, "to", "Liquidity deposit"),
    _T.LP_WITHDRAW: _with_protocol("Removed", _IN, "from", "Liquidity withdrawal"),
    _T.LOAN_BORROW: _with_protocol("Borrowed", _IN, "from", "Loan"),
    _T.LOAN_REPAY: _with_protocol("Repaid", _OUT, "to", "Loan repayment"),
    _T.BRIDGE_OUT: _with_protocol("Bridged out", _OUT, "via", "Bridge transfer"),
    _T.BRIDGE_IN: _with_protocol("Bridged in", _IN, "via", "Bridge transfer"),
    _T.BURN: _burn,
    _T.MINT: _mint,
    _T.NFT_MINT: _nft_mint,
    _T.NFT_SALE: _nft_sale,
    _T.NFT_PURCHASE: _nft_purchase,
    _T.NFT_ACTIVITY: _nft_activity,
    _T.MEMO: _memo,
    _T.PROGRAM_INTERACTION: _program_interaction,
    _T.UNKNOWN: _unknown,
    _T.EXCHANGE_TRADE: _exchange_trade,
    _T.EXCHANGE_C2C_TRADE: _exchange_trade,
    _T.EXCHANGE_DEPOSIT: _single(_IN, "Deposited {leg} to exchange", "Exchange deposit"),
    _T.EXCHANGE_WITHDRAWAL: _single(_OUT, "Withdrew {leg} from exchange", "Exchange withdrawal"),
    _T.EXCHANGE_FIAT_BUY: _single(_IN, "Bought {leg} with fiat", "Fiat purchase"),
    _T.EXCHANGE_FIAT_SELL: _single(_OUT, "Sold {leg} for fiat", "Fiat sale"),
    _T.EXCHANGE_CONVERT: _convert("Converted", "to", "Exchange convert"),
    _T.EXCHANGE_DUST_CONVERT: _convert("Dust convert:", "→", "Dust convert"),
    _T.EXCHANGE_STAKE: _single(_OUT, "Staked {leg} on exchange", "Exchange stake"),
    _T.EXCHANGE_UNSTAKE: _single(_IN, "Unstaked {leg} from exchange", "Exchange unstake"),
    _T.EXCHANGE_INTEREST: _single(_IN, "Earned {leg} (interest)", "Earn reward"),
    _T.EXCHANGE_DIVIDEND: _single(_IN, "Earned {leg} (dividend)", "Exchange dividend"),
    _T.MARGIN_BORROW: _single(_IN, "Borrowed {leg} (margin)", "Margin borrow"),
    _T.MARGIN_REPAY: _single(_OUT, "Repaid {leg} (margin)", "Margin repay"),
    _T.MARGIN_INTEREST: _single(_OUT, "Margin interest: {leg}", "Margin interest"),
    _T.MARGIN_LIQUIDATION: _single(_OUT, "Margin liquidation: {leg}", "Margin liquidation"),
}


def build_summary(ctx: SummaryContext) -> str:
    template = _TEMPLATES.get(ctx.tx_type)
    if template is None:
        return f"{ctx.tx_type.value} via {ctx.protocol_name}" if ctx.protocol_name else ctx.tx_type.value
    return template(ctx)
