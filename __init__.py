"""
Decision Forest

Random forest classifier built from Gini decision trees over a shared,
read-only dataset. Each tree draws its candidate features through a
feature selector, either uniformly or biased toward a ranked list of
features, and the forest reports per-feature impact alongside its votes.

Forests and single trees are saved as numpy ``.npz`` archives.
"""
