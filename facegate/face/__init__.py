"""Face recognition building blocks (descriptor extractor/reference index/matcher).

The matcher only ever sees an immutable ReferenceSet; rebuilding the index swaps in a
new matcher instead of editing the current one.
"""
