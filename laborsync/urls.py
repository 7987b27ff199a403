from django.urls import path

from workforce.api import api

urlpatterns = [
    path("api/", api.urls),
]
