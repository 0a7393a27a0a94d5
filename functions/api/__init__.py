# REST handlers for the subscription API
