"""Impermanent-loss prediction engine for range-bound liquidity positions.

A deterministic fixed-point kernel, a volatility estimator over a noisy
price stream, and a predictor that turns price, range, volatility and
horizon into an exit probability and expected loss.

Usage::

    python3 -m deltaguard predict --price 2000 --lower 1000 --upper 4000 --volatility 0.5 --days 30
"""
