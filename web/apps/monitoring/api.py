from django.db import DatabaseError, connection
from django.http import JsonResponse

from apps.orders.http_adapters import BREAKERS


def health_view(_request):
    db_ok = False
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
    except DatabaseError:
        db_ok = False

    circuits = {name: {"state": cb.state} for name, cb in BREAKERS.items()}

    # an open circuit degrades the API but does not make it unhealthy
    ok = db_ok
    code = 200 if ok else 503
    return JsonResponse(
        {"ok": ok, "components": {"db": {"ok": db_ok}, "circuits": circuits}},
        status=code,
    )
