"""Engine layer.

Signal filtering, state derivation, trip and parking lifecycles and
missed-trip reconstruction.  Only these services write derived records.
"""
