"""
Stream API (ETSI GS QKD 004): OPEN_CONNECT, GET_KEY and CLOSE over
key streams identified by a 16-byte KSID.
"""
