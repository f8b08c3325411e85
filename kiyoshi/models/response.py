"""
接口响应结构
"""

from typing import Any, Optional

from pydantic import BaseModel


class CommonResponse(BaseModel):
    """通用响应，code 为 success 或异常错误码"""
    code: str = 'success'
    message: str = '成功'
    data: Optional[Any] = None
