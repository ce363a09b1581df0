from django.urls import path
from . import views

app_name = 'orders'

urlpatterns = [
    path('', views.create_order, name='create-order'),
    path('<str:order_id>/', views.get_order, name='order-detail'),

    # Dispatch
    path('<str:order_id>/dispatch/', views.dispatch_order, name='dispatch-order'),
    path('<str:order_id>/expand-search/', views.expand_search, name='expand-search'),

    # Lifecycle
    path('<str:order_id>/transition/', views.transition, name='transition-order'),
    path('<str:order_id>/cancel/', views.cancel_order, name='cancel-order'),

    # Tracking
    path('<str:order_id>/tracking/', views.order_tracking, name='order-tracking'),
]
