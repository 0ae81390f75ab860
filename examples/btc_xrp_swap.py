#!/usr/bin/env python3
"""
Example: XRP -> BTC Atomic Swap

Runs both parties of a swap against a bitcoind regtest node and the
XRPL testnet:

1. Initiator locks 0.14 XRP in an escrow (120 s cancel window)
2. Responder verifies the escrow, locks 0.001 BTC in a P2SH HTLC
   (5-block relative timelock)
3. Initiator claims the BTC, revealing the secret on-chain
4. Responder extracts the secret from the claim and finishes the escrow

Usage:
    bitcoind -regtest -rpcuser=u -rpcpassword=p -fallbackfee=0.0001 &
    HTLCSWAP_BTC_RPC_USER=u HTLCSWAP_BTC_RPC_PASSWORD=p HTLCSWAP_BTC_WALLET=demo \
        python examples/btc_xrp_swap.py
"""

import time
import logging
from dataclasses import replace

from xrpl.wallet import Wallet, generate_faucet_wallet

from htlcswap import (
    BTCClient, BTCConfig, XRPClient, XRPConfig, BTCHtlc, XRPEscrow,
    BTCLeg, XRPLeg, SwapExecutor, SwapConfig, LegState, TimeoutPolicy,
)
from htlcswap.core import TERMINAL_STATES, BITCOIN_MIN_BLOCKS

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
log = logging.getLogger(__name__)


def main():
    # =================================================================
    # 1. Initialize clients
    # =================================================================
    log.info("Initializing chain clients...")

    btc_config = BTCConfig.from_env()
    if not btc_config.wallet_name:
        btc_config = replace(btc_config, wallet_name="htlcswap-demo")
    btc_client = BTCClient(btc_config)
    btc_client.create_wallet()
    miner = btc_client.get_new_address()
    if btc_client.get_block_count() < BITCOIN_MIN_BLOCKS:
        btc_client.generate_to_address(BITCOIN_MIN_BLOCKS, miner)

    xrp_client = XRPClient(XRPConfig.from_env())

    # Regtest blocks are mined by this script, one per step
    policy = TimeoutPolicy(safety_margin_seconds=30, btc_block_interval=10)
    btc_htlc = BTCHtlc(btc_client, network=btc_config.network)
    escrow = XRPEscrow(xrp_client)

    executor = SwapExecutor(
        {
            "BTC": BTCLeg(btc_htlc, btc_client, policy),
            "XRP": XRPLeg(escrow, xrp_client),
        },
        SwapConfig(policy=policy, store_dir=".htlcswap-demo", poll_interval=4),
    )

    # =================================================================
    # 2. Keys for both parties
    # =================================================================
    initiator_xrp = escrow.create_key_pair()
    responder_xrp = escrow.create_key_pair()
    initiator_btc = btc_htlc.create_key_pair()
    responder_btc = btc_htlc.create_key_pair()

    log.info("Funding XRPL accounts from the testnet faucet...")
    for key in (initiator_xrp, responder_xrp):
        wallet = Wallet(public_key=key.pubkey.hex().upper(), private_key=key.privkey.hex().upper())
        generate_faucet_wallet(xrp_client.client, wallet=wallet)
        log.info(f"  funded {key.address}")

    # =================================================================
    # 3. Create and drive the swap
    # =================================================================
    swap = executor.create_swap(
        leg_a=LegState("XRP", sender=initiator_xrp, receiver=responder_xrp,
                       amount="0.14", timeout=120),
        leg_b=LegState("BTC", sender=responder_btc, receiver=initiator_btc,
                       amount="0.001", timeout=5),
    )
    log.info(f"Swap {swap.swap_id}, hashlock {swap.secret_hash}")

    while swap.state not in TERMINAL_STATES:
        executor.advance(swap.swap_id)
        log.info(f"  state: {swap.state.value}")
        if swap.last_error:
            log.info(f"  last error: {swap.last_error}")
        btc_client.generate_to_address(1, miner)
        time.sleep(executor.config.poll_interval)

    # =================================================================
    # 4. Result
    # =================================================================
    log.info("")
    log.info(f"Swap finished: {swap.state.value}")
    log.info(f"  BTC HTLC address: {swap.leg_b.lock.get('address')}")
    log.info(f"  BTC claim txid:   {swap.leg_b.claim_ref}")
    log.info(f"  XRP finish hash:  {swap.leg_a.claim_ref}")
    owner, sequence = swap.leg_a.lock["owner"], swap.leg_a.lock["offer_sequence"]
    log.info(f"  Escrow {owner}#{sequence} open: {escrow.get_escrow(owner, sequence) is not None}")

    btc_client.close()


if __name__ == "__main__":
    main()
