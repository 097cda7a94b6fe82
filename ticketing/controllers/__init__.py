"""
HTTP layer. Each controller owns an APIRouter and registers its
endpoints in "_init_router".
"""
