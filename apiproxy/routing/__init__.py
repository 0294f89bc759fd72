"""
Route resolution: the static route table and request classification.
"""
