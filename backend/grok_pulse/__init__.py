"""
Grok Pulse: scheduled sentiment scoring for a universe of Solana tokens.

Pipeline Flow:
1. Sources → Token Universe (dedupe listings + watchlist by address)
2. Token → Context (on-chain metrics + social mentions)
3. Context → Sentiment (Grok verdict, validated and hash-checked)
4. Sentiment → Persistence (snapshot, history, delta events, run meta)
"""

__version__ = "0.1.0"
