"""Provider 包测试 fixtures"""

import pytest


@pytest.fixture
def classification_messages() -> list[dict[str, str]]:
    """分类请求 messages 测试数据"""
    return [
        {"role": "system", "content": "Classify the latest message. Reply with JSON."},
        {"role": "user", "content": "[m1] DELEGATE: Can we move it to Jan 15?"},
    ]
