from __future__ import annotations

import logging

from strategy_flow.flow.models import FetchNode, GenerateNode, NotifyNode, TriggerNode
from strategy_flow.flow.store import StrategyStore


LOGGER = logging.getLogger(__name__)

BTC_ANALYSIS_STRATEGY_ID = 1
CRYPTO_TIP_STRATEGY_ID = 2


def ensure_default_strategies(store: StrategyStore) -> list[int]:
    """Insert the demo strategies; rows that already exist are left untouched."""
    store.create_strategy(
        strategy_id=BTC_ANALYSIS_STRATEGY_ID,
        name="BTC Market Analysis",
        description=(
            "Analyzes BTC price and the fear/greed index, sends the analysis to Telegram "
            "and triggers the crypto tip strategy."
        ),
        cron="0 9 * * *",
        ignore_conflicts=True,
    )
    store.create_strategy(
        strategy_id=CRYPTO_TIP_STRATEGY_ID,
        name="Crypto Tip",
        description="Generates a crypto trading tip and sends it to Telegram.",
        cron="0 12 * * *",
        ignore_conflicts=True,
    )

    nodes = [
        FetchNode(
            id=1,
            strategy_id=BTC_ANALYSIS_STRATEGY_ID,
            name="Get BTC Price",
            url="https://api.binance.com/api/v3/ticker/price?symbol=BTCUSDT",
            json_path="$.price",
            cast_to_number=True,
            output_variable="btc_price",
            order_index=1,
        ),
        FetchNode(
            id=2,
            strategy_id=BTC_ANALYSIS_STRATEGY_ID,
            name="Get Fear & Greed Index",
            url="https://api.alternative.me/fng/",
            json_path="$.data[0].value",
            cast_to_number=True,
            output_variable="fear_greed_index",
            order_index=1,
        ),
        GenerateNode(
            id=1,
            strategy_id=BTC_ANALYSIS_STRATEGY_ID,
            name="Market Analysis",
            model_tier="cheap",
            system_prompt=(
                "You are a crypto market analyst. Analyze the provided BTC price and "
                "fear/greed index data."
            ),
            user_prompt=(
                "Based on the current BTC price and fear/greed index, provide a brief market "
                "analysis with key insights and potential trading signals. Keep it concise "
                "and actionable."
            ),
            include_variables=True,
            output_variable="market_analysis",
            order_index=2,
        ),
        NotifyNode(
            id=1,
            strategy_id=BTC_ANALYSIS_STRATEGY_ID,
            name="Send Market Analysis",
            chat_id="",
            message_template=(
                "🔍 *Daily Market Analysis*\n\n"
                "📊 BTC Price: ${{btc_price}}\n"
                "😱 Fear & Greed: {{fear_greed_index}}\n\n"
                "{{market_analysis}}"
            ),
            message_type="info",
            order_index=3,
        ),
        TriggerNode(
            id=1,
            strategy_id=BTC_ANALYSIS_STRATEGY_ID,
            name="Trigger Crypto Tip",
            target_strategy_id=CRYPTO_TIP_STRATEGY_ID,
            wait_for_completion=False,
            order_index=4,
        ),
        GenerateNode(
            id=2,
            strategy_id=CRYPTO_TIP_STRATEGY_ID,
            name="Generate Crypto Tip",
            model_tier="cheap",
            system_prompt=(
                "You are a helpful crypto trading educator. Provide educational tips and "
                "insights for crypto traders."
            ),
            user_prompt=(
                "Generate a useful crypto trading tip for today. Focus on general trading "
                "principles, risk management, or market insights. Keep it educational and "
                "practical."
            ),
            output_variable="crypto_tip",
            order_index=1,
        ),
        NotifyNode(
            id=2,
            strategy_id=CRYPTO_TIP_STRATEGY_ID,
            name="Send Crypto Tip",
            chat_id="",
            message_template="💡 *Daily Crypto Tip*\n\n{{crypto_tip}}",
            message_type="success",
            order_index=2,
        ),
    ]
    for node in nodes:
        store.add_node(node, ignore_conflicts=True)

    LOGGER.info("Default strategies are in place.")
    return [BTC_ANALYSIS_STRATEGY_ID, CRYPTO_TIP_STRATEGY_ID]
