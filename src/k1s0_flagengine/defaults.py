"""プラットフォーム組み込みのフラグ定義"""

from __future__ import annotations

from .models import FeatureFlag, FlagMetadata, FlagType, FlagVariation


def default_flags() -> list[FeatureFlag]:
    """組み込みフラグ一式を新しいインスタンスで返す。

    StaticDefinitionSource に渡すか、FlagEngine.set_flag で個別に登録する。
    """
    return [
        FeatureFlag(
            key="ai_coaching_enabled",
            name="AI Coaching",
            description="Enable AI-powered coaching during debates",
            default_value=True,
            metadata=FlagMetadata(
                owner="product",
                team="ai",
                tags=["ai", "coaching"],
                purpose="Enable AI coaching functionality",
            ),
        ),
        FeatureFlag(
            key="new_dashboard_enabled",
            name="New Dashboard",
            description="Enable the new teacher dashboard interface",
            default_value=False,
            metadata=FlagMetadata(
                owner="product",
                team="frontend",
                tags=["ui", "dashboard"],
                purpose="Gradual rollout of new dashboard",
            ),
        ),
        FeatureFlag(
            key="max_debate_participants",
            name="Max Debate Participants",
            description="Maximum number of participants allowed in a debate",
            type=FlagType.NUMBER,
            default_value=4,
            variations=[
                FlagVariation(id="4", value=4, name="Standard"),
                FlagVariation(id="8", value=8, name="Large"),
            ],
            metadata=FlagMetadata(
                owner="product",
                team="backend",
                tags=["limits", "performance"],
                category="configuration",
                purpose="Control debate size for performance",
            ),
        ),
        FeatureFlag(
            key="debate_themes",
            name="Available Debate Themes",
            description="List of available debate themes and topics",
            type=FlagType.JSON,
            default_value={
                "themes": ["education", "environment", "technology", "social-issues"],
                "featured": "technology",
            },
            variations=[
                FlagVariation(
                    id="standard",
                    value={
                        "themes": ["education", "environment", "technology", "social-issues"],
                        "featured": "technology",
                    },
                ),
            ],
            metadata=FlagMetadata(
                owner="content",
                team="curriculum",
                tags=["content", "themes"],
                category="configuration",
                purpose="Manage available debate content",
            ),
        ),
    ]
