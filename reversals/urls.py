from django.urls import path

from . import views

urlpatterns = [
    path("bills/<int:bill_id>/correct/", views.api_bill_correct, name="api_bill_correct"),
]
