from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping

from .types import AssetCategory

SOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
USDT_MINT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"
WBTC_MINT = "3NZ9JMVBmGAqocybic2c7LQCJScmgsAZ6vQqTDzcqmJh"
WETH_MINT = "7vfCXTUXx5WJV5JADk17DUJ4ksgau7utNKj4b963voxs"
RAY_MINT = "4k3Dyjzvzp8eMZWUXbBCjEvwSkkk59S5iCNLY3QrkX6R"
BONK_MINT = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"
JUP_MINT = "JUPyiwrYJFskUPiHa7hkeR8VUtAeFoSYbKedZNsDvCN"
SPYX_MINT = "XsoCS1TfEyfFhfvj8EtZ528L3CaKBDBRqRapnBbDF2W"
QQQX_MINT = "Xs8S1uUs1zvS2p7iwtsG3b6fkhpvmwz4GYU3gWAmWHZ"
AAPLX_MINT = "XsbEhLAtcf6HdfpFZ5xEMdqW8nfAvcsP5bdudRLJzJp"
NVDAX_MINT = "Xsc9qvGR1efVDFGLrVsmkzv3qi45LTBjeUKSPmx9qEh"
TSLAX_MINT = "XsDoVfqeBukxuZHWhdvWHBhgEHjGNst4MLodqsJHzoB"


@dataclass(slots=True, frozen=True)
class TokenInfo:
    mint: str
    symbol: str
    decimals: int
    category: AssetCategory


KNOWN_TOKENS: tuple[TokenInfo, ...] = (
    TokenInfo(USDC_MINT, "USDC", 6, AssetCategory.STABLECOIN),
    TokenInfo(USDT_MINT, "USDT", 6, AssetCategory.STABLECOIN),
    TokenInfo(SOL_MINT, "SOL", 9, AssetCategory.BASE_ASSET),
    TokenInfo(WBTC_MINT, "WBTC", 8, AssetCategory.OTHER_TOKEN),
    TokenInfo(WETH_MINT, "WETH", 8, AssetCategory.OTHER_TOKEN),
    TokenInfo(RAY_MINT, "RAY", 6, AssetCategory.OTHER_TOKEN),
    TokenInfo(BONK_MINT, "BONK", 5, AssetCategory.OTHER_TOKEN),
    TokenInfo(JUP_MINT, "JUP", 6, AssetCategory.OTHER_TOKEN),
    # xStocks: tokenized equities settled as SPL tokens
    TokenInfo(SPYX_MINT, "SPYx", 8, AssetCategory.STOCK),
    TokenInfo(QQQX_MINT, "QQQx", 8, AssetCategory.STOCK),
    TokenInfo(AAPLX_MINT, "AAPLx", 8, AssetCategory.STOCK),
    TokenInfo(NVDAX_MINT, "NVDAx", 8, AssetCategory.STOCK),
    TokenInfo(TSLAX_MINT, "TSLAx", 8, AssetCategory.STOCK),
)

DEFAULT_REPRESENTATIVES: dict[AssetCategory, str] = {
    AssetCategory.STABLECOIN: USDC_MINT,
    AssetCategory.BASE_ASSET: SOL_MINT,
    AssetCategory.OTHER_TOKEN: WBTC_MINT,
    AssetCategory.STOCK: SPYX_MINT,
}


class TokenRegistry:
    def __init__(
        self,
        tokens: Iterable[TokenInfo] = KNOWN_TOKENS,
        *,
        representatives: Mapping[AssetCategory, str] | None = None,
    ) -> None:
        self._by_mint: dict[str, TokenInfo] = {}
        self._by_symbol: dict[str, TokenInfo] = {}
        for token in tokens:
            self.register(token)
        self._representatives = dict(representatives or DEFAULT_REPRESENTATIVES)

    def register(self, token: TokenInfo) -> None:
        self._by_mint[token.mint] = token
        self._by_symbol[token.symbol.upper()] = token

    def resolve(self, asset: str) -> TokenInfo | None:
        key = (asset or "").strip()
        if not key:
            return None
        return self._by_mint.get(key) or self._by_symbol.get(key.upper())

    def require(self, asset: str) -> TokenInfo:
        token = self.resolve(asset)
        if token is None:
            raise KeyError(f"Unknown token: {asset}")
        return token

    def category_of(self, asset: str, default: AssetCategory = AssetCategory.OTHER_TOKEN) -> AssetCategory:
        token = self.resolve(asset)
        return token.category if token is not None else default

    @property
    def representatives(self) -> dict[AssetCategory, str]:
        return dict(self._representatives)
