"""
Transaction wire format, PSBT codec and the assemble/sign/finalize stages.
"""
