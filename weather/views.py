import logging

from django.http import JsonResponse
from django.utils import timezone
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET

from configuration.utils import get_api_key
from weather.utils import DEFAULT_ENDPOINT, AemetError, fetch_aemet


def _param(request, header, query):
    return request.headers.get(header) or request.GET.get(query)


@csrf_exempt
@require_GET
def aemet_proxy(request):
    app_key = _param(request, "X-App-Api-Key", "appApiKey")
    if not app_key:
        return JsonResponse({"error": "An application API key is required"}, status=403)

    expected = get_api_key("aemet_function_key")
    if expected is None:
        logging.error("AEMET proxy called but no function key is configured")
        return JsonResponse({"error": "The proxy is not configured"}, status=500)
    if app_key != expected:
        return JsonResponse({"error": "Invalid application API key"}, status=403)

    aemet_key = _param(request, "X-Aemet-Api-Key", "aemetApiKey")
    if not aemet_key:
        return JsonResponse({"error": "An AEMET API key is required"}, status=400)

    endpoint = request.GET.get("endpoint") or DEFAULT_ENDPOINT
    if endpoint == "status":
        return JsonResponse(
            {
                "status": "active",
                "message": "The AEMET proxy is working",
                "timestamp": timezone.now().isoformat(),
            }
        )

    try:
        data = fetch_aemet(endpoint, aemet_key)
    except AemetError as e:
        return JsonResponse(e.as_json(), status=e.status_code)
    return JsonResponse(data, safe=False)
