"""
examples/genkeys.py — Print a fresh agent key pair.

The secret goes in NOSTR_SK_HEX; the public key is the identity other
agents see on every envelope you sign.

Run:
    python examples/genkeys.py
"""

from satoshi_ride import Signer, generate_secret_key_hex


def main():
    secret = generate_secret_key_hex()
    signer = Signer.from_secret_hex(secret)
    print(f"NOSTR_SK_HEX={secret}")
    print(f"public key  {signer.identity}")


if __name__ == "__main__":
    main()
