"""
peakdiff: differential binding analysis between two groups of samples

Consensus windows are built from per-sample peak sets, reads are counted per
window, counts are normalized under competing models and a dispersion-aware
negative-binomial test ranks windows by differential signal.
"""

__version__ = "0.1.0"
