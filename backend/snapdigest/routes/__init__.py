"""
SnapDigest Backend — API Routes Package
=========================================

Route Inventory:
    - summarize.py:  POST   /api/summarize
                     POST   /api/send-to-telegram
    - telegram.py:   POST   /api/telegram/user-stats
                     POST   /api/telegram/history
                     POST   /api/telegram/send-stats
    - user.py:       POST   /api/user/profile
    - admin.py:      DELETE /api/admin/quota/{user_id}
    - health.py:     GET    /health[?deep=true]

Routes are THIN: parse the request, call SummaryService or the runtime,
shape the response. Business rules live in services.
"""
