"""
Login orchestration for the Multisig Monitor console.

Design goals:
- Provider-agnostic flows (Google + GitHub OAuth, Ethereum signature).
- Exactly-once code exchange and single-shot signing under duplicate events.
- Collaborators (session store, wallet, navigation, backend) behind small protocols.
"""
