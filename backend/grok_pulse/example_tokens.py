"""
Default tokens used when neither the live watchlist nor the environment
provides one.

These are well-known, liquid Solana tokens so a pulse run always has a
baseline universe to score.
"""

from typing import List

from .schemas import Token


DEFAULT_WATCHLIST_TOKENS: List[Token] = [
    Token(address="So11111111111111111111111111111111111111112", symbol="SOL"),
    Token(address="DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263", symbol="BONK"),
    Token(address="EKpQGSJtjMFqKZ9KQanSqYXRcF8fBopzLHYxdM65zcjm", symbol="WIF"),
    Token(address="EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v", symbol="USDC"),
]
