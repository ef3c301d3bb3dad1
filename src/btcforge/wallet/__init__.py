"""
Keys, addresses, signing primitives and UTXO selection.
"""
