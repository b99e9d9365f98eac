"""
Lunex Deployment Tooling
========================

Off-chain tooling for rolling out and operating the Lunex DEX contracts.

Structure:
- chain: RPC gateway over web3.py
- contracts: typed contract interface descriptors and the Lunex catalogue
- tracker: transaction lifecycle tracking
- plan / record / orchestrator: dependency-ordered deployment with resumable records
- verifier: post-deployment verification report
- governance / listing: token-listing proposals, voting, execution and liquidity
- cli: command line entry point
"""

__version__ = "1.0.0"
__author__ = "Lunex Protocol Team"
