from django.urls import path

from . import api_views

app_name = "slots"

urlpatterns = [
    path("api/", api_views.CreateSlotAPIView.as_view(), name="api_create_slot"),
    path("api/bulk/", api_views.BulkCreateSlotsAPIView.as_view(), name="api_bulk_create_slots"),
    path("api/available/", api_views.AvailableSlotsAPIView.as_view(), name="api_available_slots"),
    path("api/<int:slot_id>/", api_views.DeleteSlotAPIView.as_view(), name="api_delete_slot"),
    path("api/<int:slot_id>/block/", api_views.BlockSlotAPIView.as_view(), name="api_block_slot"),
    path("api/<int:slot_id>/unblock/", api_views.UnblockSlotAPIView.as_view(), name="api_unblock_slot"),
]
