"""Order-lifecycle engine of the delivery client: cart, coupons, checkout and payment tracking."""
