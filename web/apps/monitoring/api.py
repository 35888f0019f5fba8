from django.db import connection
from django.http import JsonResponse

from apps.orders import providers


def health_view(_request):
    db_ok = False
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
    except Exception:
        db_ok = False

    # an open breaker degrades the service but does not make this instance unhealthy
    breakers = {name: {"state": cb.state} for name, cb in providers.get_services().breakers.items()}
    code = 200 if db_ok else 503
    return JsonResponse(
        {"ok": db_ok, "components": {"db": {"ok": db_ok}, "upstreams": breakers}},
        status=code,
    )
