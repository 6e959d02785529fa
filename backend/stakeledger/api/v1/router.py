"""API v1 router aggregation"""
from fastapi import APIRouter

from stakeledger.api.v1 import staking, tokens, nfts, events

api_router = APIRouter()

api_router.include_router(staking.router, prefix="/staking", tags=["Staking"])
api_router.include_router(tokens.router, prefix="/tokens", tags=["Token Snapshots"])
api_router.include_router(nfts.router, prefix="/nfts", tags=["NFT Snapshots"])
api_router.include_router(events.router, prefix="/events", tags=["Events"])
